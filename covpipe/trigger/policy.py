"""
Trigger Policy
==============
Decides whether an incoming repository event starts a pipeline run.

Rules:
    - Manual dispatch always runs.
    - push / pull_request run only when their filter is configured and the
      branch matches it (``branches`` globs, minus ``branches-ignore`` globs).
    - No configured filter → skip. The pipeline is dormant until a filter is
      added to the definition; no code change is needed to enable it.

A skip is a normal outcome: it creates no run, no artifacts and no failure.
"""
import fnmatch
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from covpipe.models.trigger_event import EventType, TriggerEvent
from covpipe.parser.pipeline_config import BranchFilter, TriggerFilters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerDecision:
    run: bool
    reason: str

    @property
    def label(self) -> str:
        return "run" if self.run else "skip"


# Anything with this shape can gate the orchestrator
TriggerPolicyFn = Callable[[TriggerEvent], TriggerDecision]


def _matches_any(branch: str, patterns: tuple[str, ...]) -> bool:
    return any(fnmatch.fnmatchcase(branch, p) for p in patterns)


def _branch_allowed(branch: str, branch_filter: BranchFilter) -> Optional[str]:
    """Return None when allowed, otherwise the reason for skipping."""
    if branch_filter.branches and not _matches_any(branch, branch_filter.branches):
        return f"branch '{branch}' not in {list(branch_filter.branches)}"
    if branch_filter.branches_ignore and _matches_any(branch, branch_filter.branches_ignore):
        return f"branch '{branch}' ignored"
    return None


class TriggerPolicy:
    """Callable policy built from declarative TriggerFilters."""

    def __init__(self, filters: Optional[TriggerFilters] = None) -> None:
        self.filters = filters or TriggerFilters()

    def decide(self, event: TriggerEvent) -> TriggerDecision:
        if not event.is_automatic:
            decision = TriggerDecision(True, "manual dispatch")
        else:
            if event.event_type == EventType.PUSH:
                branch_filter = self.filters.push
            else:
                branch_filter = self.filters.pull_request

            if branch_filter is None:
                decision = TriggerDecision(False, f"{event.event_type.value} trigger disabled")
            else:
                rejection = _branch_allowed(event.branch, branch_filter)
                if rejection:
                    decision = TriggerDecision(False, rejection)
                else:
                    decision = TriggerDecision(True, f"{event.event_type.value} on '{event.branch}'")

        logger.info(
            "[TRIGGER] %s %s@%s → %s (%s)",
            event.event_type.value, event.branch or "-", event.commit_sha[:12],
            decision.label, decision.reason,
        )
        return decision

    __call__ = decide
