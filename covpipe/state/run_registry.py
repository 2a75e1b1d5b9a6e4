"""
Run Registry
============
In-memory index of the runs this process has started.

Maps run_id → Orchestrator. Each orchestrator owns its PipelineRun and
workspace; the registry only lets the API find them again (status,
cancellation, report download). Nothing is persisted across restarts;
once more than RUN_HISTORY_LIMIT runs are indexed the oldest finished
ones are dropped (their workspaces stay on disk).
"""
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

from covpipe.models.pipeline_run import PipelineRun

if TYPE_CHECKING:
    from covpipe.pipeline.orchestrator import Orchestrator


class RunRegistry:

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, "Orchestrator"] = {}

    def add(self, orchestrator: "Orchestrator") -> None:
        with self._lock:
            self._runs[orchestrator.run_id] = orchestrator

    def get(self, run_id: str) -> Optional["Orchestrator"]:
        with self._lock:
            return self._runs.get(run_id)

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        orchestrator = self.get(run_id)
        return orchestrator.run if orchestrator is not None else None

    def list_runs(self) -> List[PipelineRun]:
        """All known runs, newest first."""
        with self._lock:
            runs = [o.run for o in self._runs.values()]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def active(self) -> List["Orchestrator"]:
        with self._lock:
            return [o for o in self._runs.values() if not o.run.is_terminal]

    def prune(self, keep: int) -> List[str]:
        """Forget the oldest finished runs so at most ``keep`` runs stay indexed."""
        with self._lock:
            excess = len(self._runs) - keep
            if excess <= 0:
                return []
            finished = sorted(
                (o for o in self._runs.values() if o.run.is_terminal),
                key=lambda o: o.run.created_at,
            )
            dropped = [o.run_id for o in finished[:excess]]
            for run_id in dropped:
                del self._runs[run_id]
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
