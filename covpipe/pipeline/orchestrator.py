"""
Orchestrator
============
Drives one PipelineRun through an explicit, ordered step list.

    provision → fetch-tool → build → test → extract → (publish)

Each step is a PipelineStep(name, status, execute, error_cls, fatal). The
run enters ``status`` before ``execute`` is called; the first fatal
failure moves the run to FAILED and no later step starts. Every core
step is fatal: a run either succeeds through extract or fails at one
named stage.

Report validity:
    - The CoverageReport is attached only by succeed().
    - On FAILED, any partial or final report file in the checkout is removed.
    - On CANCELLED, partial artifacts are left alone but never renamed into
      place and never published.

Publishing happens after SUCCEEDED, at most once, and cannot change the
terminal state.

Isolation:
    One Orchestrator per run. Nothing here is shared between runs, so
    concurrent runs need no locking.
"""
import os
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Type

from covpipe.core.config import (
    DOCKER_IMAGE,
    EXECUTOR_BACKEND,
    STEP_TIMEOUT,
    WORKSPACE_ROOT,
)
from covpipe.core.constants import (
    CHECKOUT_DIR,
    RUN_SUMMARY_FILE,
    STAGE_BUILD,
    STAGE_EXTRACT,
    STAGE_FETCH_TOOL,
    STAGE_PROVISION,
    STAGE_TEST,
)
from covpipe.core.errors import (
    BuildFailed,
    CoverageExtractionFailed,
    PipelineError,
    ProvisioningFailed,
    PublishFailed,
    RunCancelled,
    TestFailed,
    ToolFetchFailed,
)
from covpipe.executor.build_executor import Executor, get_executor
from covpipe.models.coverage_report import CoverageReport
from covpipe.models.pipeline_run import PipelineRun, RunStatus, StepResult
from covpipe.models.trigger_event import TriggerEvent
from covpipe.parser.pipeline_config import PipelineConfig
from covpipe.services.coverage_runner import CoverageRunner
from covpipe.services.provisioner import EnvironmentProvisioner, ProvisionedEnvironment
from covpipe.services.report_publisher import NoopPublisher, ReportPublisher
from covpipe.services.results_writer import ResultsWriter
from covpipe.services.tool_fetcher import ToolFetcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineStep:
    name: str
    status: RunStatus
    execute: Callable[[], None]
    error_cls: Type[PipelineError]
    fatal: bool = True


class Orchestrator:
    """
    Parameters
    ----------
    config : PipelineConfig
        Parsed pipeline definition.
    trigger : TriggerEvent
        Event that created this run (already accepted by the trigger policy).
    executor : Executor | None
        Runs toolchain, build, test and extraction. Default: backend from config.
    provisioner : EnvironmentProvisioner | None
    fetcher : ToolFetcher | None
    publisher : ReportPublisher | None
        Default: NoopPublisher.
    workspace_root : str
        Parent directory of the run's isolated workspace.
    """

    def __init__(
        self,
        config: PipelineConfig,
        trigger: TriggerEvent,
        executor: Optional[Executor] = None,
        provisioner: Optional[EnvironmentProvisioner] = None,
        fetcher: Optional[ToolFetcher] = None,
        publisher: Optional[ReportPublisher] = None,
        workspace_root: str = WORKSPACE_ROOT,
        backend: str = EXECUTOR_BACKEND,
        docker_image: str = DOCKER_IMAGE,
        timeout_seconds: int = STEP_TIMEOUT,
    ) -> None:
        self.config = config
        self.run = PipelineRun(trigger=trigger)
        self.timeout_seconds = timeout_seconds
        self.run_dir = os.path.abspath(os.path.join(workspace_root, self.run.run_id))

        self.executor = executor or get_executor(backend, self.run_dir, docker_image=docker_image)
        self.provisioner = provisioner or EnvironmentProvisioner(
            self.executor,
            workspace_root=workspace_root,
            isolate_toolchain=(backend == "docker"),
            timeout_seconds=timeout_seconds,
        )
        self.fetcher = fetcher or ToolFetcher()
        self.publisher = publisher or NoopPublisher()

        # Built up front so a failure in any step can clear report debris
        self.runner = CoverageRunner(
            self.executor,
            os.path.join(self.provisioner.run_dir_for(self.run_id), CHECKOUT_DIR),
            config.build,
            config.coverage,
            timeout_seconds=timeout_seconds,
        )

        self._cancel_event = threading.Event()
        self._provisioned: Optional[ProvisionedEnvironment] = None
        self._report: Optional[CoverageReport] = None

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def repo_url(self) -> str:
        return self.run.trigger.repo_url or self.config.repo_url

    def cancel(self) -> None:
        """Request cancellation; the active command is killed."""
        if not self.run.is_terminal:
            logger.warning("[RUN %s] Cancellation requested", self.run_id)
        self._cancel_event.set()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _provision(self) -> None:
        self.run.workspace_path = self.provisioner.run_dir_for(self.run_id)
        self._provisioned = self.provisioner.provision(
            self.run_id, self.run.trigger, self.repo_url,
            self.config.toolchain, cancel_event=self._cancel_event,
        )
        self.runner.checkout_dir = self._provisioned.checkout_dir

    def _fetch_tool(self) -> None:
        installed = self.fetcher.fetch(
            self.config.tool, self._provisioned.bin_dir, cancel_event=self._cancel_event,
        )
        self._provisioned.environment.prepend_path(installed.bin_dir)

    def _build(self) -> None:
        self.runner.build(self._provisioned.environment, cancel_event=self._cancel_event)

    def _test(self) -> None:
        self.runner.test(self._provisioned.environment, cancel_event=self._cancel_event)

    def _extract(self) -> None:
        self._report = self.runner.extract(
            self._provisioned.environment, cancel_event=self._cancel_event,
        )

    def steps(self) -> List[PipelineStep]:
        return [
            PipelineStep(STAGE_PROVISION, RunStatus.PROVISIONING, self._provision, ProvisioningFailed),
            PipelineStep(STAGE_FETCH_TOOL, RunStatus.FETCHING_TOOL, self._fetch_tool, ToolFetchFailed),
            PipelineStep(STAGE_BUILD, RunStatus.BUILDING, self._build, BuildFailed),
            PipelineStep(STAGE_TEST, RunStatus.TESTING, self._test, TestFailed),
            PipelineStep(STAGE_EXTRACT, RunStatus.EXTRACTING, self._extract, CoverageExtractionFailed),
        ]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _record(self, step: PipelineStep, status: str, start: float,
                error: Optional[PipelineError] = None) -> None:
        exit_code = 0
        if error is not None:
            exit_code = error.returncode if error.returncode is not None else error.exit_code
        self.run.record_step(StepResult(
            name=step.name,
            status=status,
            exit_code=exit_code,
            duration_seconds=round(time.monotonic() - start, 3),
            log_excerpt=error.log_excerpt if error is not None else "",
            error=error.message if error is not None else "",
        ))

    def _fail(self, error: PipelineError) -> None:
        logger.error("[RUN %s] %s failed: %s", self.run_id, error.stage, error.message)
        self.run.fail(error)
        try:
            self.runner.discard_report()
        except OSError as e:
            logger.warning("[RUN %s] Could not remove report artifacts: %s", self.run_id, e)

    def _publish(self) -> None:
        try:
            self.publisher.publish(self._report, self.run)
        except PublishFailed as e:
            self.run.publish_error = e.message
        except Exception as e:
            self.run.publish_error = f"{type(e).__name__}: {e}"
        if self.run.publish_error:
            log = logger.error if self.publisher.fail_on_error else logger.warning
            log("[RUN %s] Report publishing failed: %s", self.run_id, self.run.publish_error)

    def execute(self) -> PipelineRun:
        """Run every step to a terminal state. Blocking."""
        run = self.run
        trigger = run.trigger
        logger.info(
            "[RUN %s] Starting | event=%s | ref=%s | repo=%s",
            self.run_id, trigger.event_type.value, trigger.commit_sha, self.repo_url or "-",
        )
        run_start = time.monotonic()

        for step in self.steps():
            if self._cancel_event.is_set():
                run.cancel(stage=step.name)
                break

            run.advance(step.status)
            logger.info("[RUN %s] Step %s", self.run_id, step.name)
            start = time.monotonic()

            try:
                step.execute()
            except RunCancelled as e:
                self._record(step, "cancelled", start, e)
                run.cancel(stage=step.name)
                break
            except PipelineError as e:
                error = e
            except Exception as e:
                logger.exception("[RUN %s] Unexpected error in %s", self.run_id, step.name)
                error = step.error_cls(f"Unexpected error: {type(e).__name__}: {e}")
            else:
                self._record(step, "succeeded", start)
                continue

            self._record(step, "failed", start, error)
            if step.fatal:
                self._fail(error)
                break
            logger.warning("[RUN %s] Non-fatal step %s failed, continuing", self.run_id, step.name)

        if not run.is_terminal:
            run.succeed(self._report)
            self._publish()

        logger.info(
            "[RUN %s] Finished | status=%s | time=%.2fs",
            self.run_id, run.describe(), time.monotonic() - run_start,
        )

        if os.path.isdir(self.run_dir):
            ResultsWriter.write_results(run, os.path.join(self.run_dir, RUN_SUMMARY_FILE))

        return run
