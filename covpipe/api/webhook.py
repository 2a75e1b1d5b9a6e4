"""
POST /webhook
=============
GitHub webhook receiver. Translates repository events into TriggerEvents
and hands them to the RunService, which applies the Trigger Policy.

Handled events (X-GitHub-Event):
    ping               — answered, nothing else
    push               — branch pushes; tag pushes and branch deletions are ignored
    pull_request       — opened / synchronize / reopened; branch = PR base branch
    workflow_dispatch  — manual dispatch, always runs

Signature:
    When WEBHOOK_SECRET is set, X-Hub-Signature-256 must carry a valid
    HMAC-SHA256 of the raw body, otherwise 401.
"""
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ValidationError

from covpipe.api.dependencies import get_run_service, get_webhook_secret
from covpipe.models.trigger_event import EventType, TriggerEvent
from covpipe.services.run_service import RunService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhook"])

_PR_ACTIONS = {"opened", "synchronize", "reopened"}
_NULL_SHA = "0" * 40


class WebhookResponse(BaseModel):
    status: str                 # accepted / skipped / ignored / pong
    reason: str = ""
    run_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len("sha256="):])


class InvalidPayload(ValueError):
    """A webhook field has the wrong JSON type."""


def _mapping(data: dict, key: str, where: str = "") -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidPayload(f"{where}{key} must be an object")
    return value


def _string(data: dict, key: str, where: str = "") -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidPayload(f"{where}{key} must be a string")
    return value


def _repo_url(payload: dict) -> str:
    return _string(_mapping(payload, "repository"), "clone_url", "repository.")


def _branch_from_ref(ref: str) -> str:
    return ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref


def event_from_payload(event_name: str, payload: dict) -> tuple[Optional[TriggerEvent], str]:
    """
    Map a GitHub webhook payload to a TriggerEvent.

    Returns
    -------
    (TriggerEvent | None, str)
        The event, or None plus the reason it was ignored.
    """
    if event_name == "push":
        ref = _string(payload, "ref")
        if not ref.startswith("refs/heads/"):
            return None, f"push to non-branch ref '{ref}'"
        after = _string(payload, "after")
        if payload.get("deleted") or after == _NULL_SHA:
            return None, "branch deletion"
        return TriggerEvent(
            event_type=EventType.PUSH,
            commit_sha=after,
            branch=_branch_from_ref(ref),
            repo_url=_repo_url(payload),
        ), ""

    if event_name == "pull_request":
        action = _string(payload, "action")
        if action not in _PR_ACTIONS:
            return None, f"pull_request action '{action}'"
        pr = _mapping(payload, "pull_request")
        return TriggerEvent(
            event_type=EventType.PULL_REQUEST,
            commit_sha=_string(_mapping(pr, "head", "pull_request."), "sha", "pull_request.head."),
            branch=_string(_mapping(pr, "base", "pull_request."), "ref", "pull_request.base."),
            repo_url=_repo_url(payload),
        ), ""

    if event_name == "workflow_dispatch":
        ref = _string(payload, "ref")
        return TriggerEvent(
            event_type=EventType.MANUAL,
            commit_sha=_string(payload, "after") or ref,
            branch=_branch_from_ref(ref),
            repo_url=_repo_url(payload),
        ), ""

    return None, f"unsupported event '{event_name}'"


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------
@router.post("/webhook", response_model=WebhookResponse, status_code=202)
async def receive_webhook(
    request: Request,
    x_github_event: str = Header(default=""),
    x_hub_signature_256: str = Header(default=""),
    service: RunService = Depends(get_run_service),
    secret: str = Depends(get_webhook_secret),
):
    body = await request.body()

    if secret and not verify_signature(body, secret, x_hub_signature_256):
        logger.warning("[WEBHOOK] Rejected %s delivery: bad signature", x_github_event or "unknown")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    if x_github_event == "ping":
        return WebhookResponse(status="pong")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    try:
        event, reason = event_from_payload(x_github_event, payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Incomplete {x_github_event} payload: {e.errors()}")
    except InvalidPayload as e:
        raise HTTPException(status_code=422, detail=f"Malformed {x_github_event} payload: {e}")

    if event is None:
        logger.info("[WEBHOOK] Ignored: %s", reason)
        return WebhookResponse(status="ignored", reason=reason)

    result = service.submit(event)
    if result.run is None:
        return WebhookResponse(status="skipped", reason=result.decision.reason)
    return WebhookResponse(status="accepted", reason=result.decision.reason, run_id=result.run.run_id)
