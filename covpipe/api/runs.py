"""
Runs API
========
Manual dispatch, status polling, cancellation and report download.

Routes:
    POST /runs                 — manual dispatch (always runs)
    GET  /runs                 — all runs of this process, newest first
    GET  /runs/{run_id}        — full run record
    POST /runs/{run_id}/cancel — cancel a non-terminal run
    GET  /runs/{run_id}/report — LCOV report of a succeeded run

Errors:
    404 unknown run id, 409 report requested for a run that did not succeed
    or cancel requested for a finished run.
"""
import os
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel, field_validator

from covpipe.api.dependencies import get_run_service
from covpipe.models.pipeline_run import FailureInfo, PipelineRun, RunStatus
from covpipe.models.trigger_event import EventType, TriggerEvent
from covpipe.services.results_writer import ResultsWriter
from covpipe.services.run_service import RunService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["Runs"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------
class ManualRunRequest(BaseModel):
    ref: str
    branch: str = ""
    repo_url: str = ""

    @field_validator("ref")
    @classmethod
    def validate_ref(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("ref must not be empty")
        return v.strip()


class RunSummary(BaseModel):
    run_id: str
    status: RunStatus
    terminal_status: str
    event_type: EventType
    commit_sha: str
    branch: str
    created_at: datetime
    finished_at: Optional[datetime] = None
    exit_code: int
    failure: Optional[FailureInfo] = None


def _summary(run: PipelineRun) -> RunSummary:
    return RunSummary(
        run_id=run.run_id,
        status=run.status,
        terminal_status=run.describe(),
        event_type=run.trigger.event_type,
        commit_sha=run.trigger.commit_sha,
        branch=run.trigger.branch,
        created_at=run.created_at,
        finished_at=run.finished_at,
        exit_code=run.exit_code,
        failure=run.failure,
    )


def _get_or_404(service: RunService, run_id: str) -> PipelineRun:
    run = service.registry.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Unknown run '{run_id}'")
    return run


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post("", response_model=RunSummary, status_code=202)
async def create_run(request: ManualRunRequest, service: RunService = Depends(get_run_service)):
    event = TriggerEvent(
        event_type=EventType.MANUAL,
        commit_sha=request.ref,
        branch=request.branch,
        repo_url=request.repo_url,
    )
    result = service.submit(event)
    if result.run is None:
        raise HTTPException(status_code=409, detail=f"Run not started: {result.decision.reason}")
    return _summary(result.run)


@router.get("", response_model=List[RunSummary])
async def list_runs(service: RunService = Depends(get_run_service)):
    return [_summary(r) for r in service.registry.list_runs()]


@router.get("/{run_id}")
async def get_run(run_id: str, service: RunService = Depends(get_run_service)):
    return ResultsWriter.build_summary(_get_or_404(service, run_id))


@router.post("/{run_id}/cancel", response_model=RunSummary, status_code=202)
async def cancel_run(run_id: str, service: RunService = Depends(get_run_service)):
    run = _get_or_404(service, run_id)
    if run.is_terminal:
        raise HTTPException(status_code=409, detail=f"Run '{run_id}' already {run.status.value}")
    service.cancel(run_id)
    return _summary(run)


@router.get("/{run_id}/report")
async def get_report(run_id: str, service: RunService = Depends(get_run_service)):
    run = _get_or_404(service, run_id)
    if run.status != RunStatus.SUCCEEDED or run.report is None:
        raise HTTPException(
            status_code=409,
            detail=f"No report: run '{run_id}' is {run.describe()}",
        )
    if not os.path.isfile(run.report.path):
        logger.error("[RUN %s] Report file missing at %s", run_id, run.report.path)
        raise HTTPException(status_code=404, detail="Report file no longer exists")
    return FileResponse(run.report.path, media_type="text/plain", filename=os.path.basename(run.report.path))
