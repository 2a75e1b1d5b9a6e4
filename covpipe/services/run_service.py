"""
Run Service
===========
Entry point shared by the webhook, the manual-dispatch API and tests.

    submit(event)
        1. Trigger Policy → TriggerDecision
        2. skip  → no run, no workspace, no artifacts
        3. run   → Orchestrator created, registered, executed on a worker thread

Runs are independent: one thread and one workspace per run.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from covpipe.core import config as settings
from covpipe.models.pipeline_run import PipelineRun
from covpipe.models.trigger_event import TriggerEvent
from covpipe.parser.pipeline_config import PipelineConfig
from covpipe.pipeline.orchestrator import Orchestrator
from covpipe.services.report_publisher import build_publisher
from covpipe.state.run_registry import RunRegistry
from covpipe.trigger.policy import TriggerDecision, TriggerPolicy, TriggerPolicyFn

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[PipelineConfig, TriggerEvent], Orchestrator]


def default_orchestrator_factory(config: PipelineConfig, trigger: TriggerEvent) -> Orchestrator:
    return Orchestrator(config, trigger, publisher=build_publisher(config.publish))


@dataclass
class SubmitResult:
    decision: TriggerDecision
    run: Optional[PipelineRun] = None


class RunService:
    """
    Parameters
    ----------
    config : PipelineConfig
        Pipeline definition every run uses.
    policy : TriggerPolicyFn | None
        Gate for incoming events. Default: TriggerPolicy(config.triggers).
    registry : RunRegistry | None
    orchestrator_factory : OrchestratorFactory | None
        Builds the Orchestrator for an accepted event (tests inject fakes here).
    history_limit : int | None
        Runs kept in the registry before the oldest finished ones are
        forgotten. Default: RUN_HISTORY_LIMIT.
    """

    def __init__(
        self,
        config: PipelineConfig,
        policy: Optional[TriggerPolicyFn] = None,
        registry: Optional[RunRegistry] = None,
        orchestrator_factory: Optional[OrchestratorFactory] = None,
        history_limit: Optional[int] = None,
    ) -> None:
        self.config = config
        self.policy = policy or TriggerPolicy(config.triggers)
        self.registry = registry or RunRegistry()
        self.orchestrator_factory = orchestrator_factory or default_orchestrator_factory
        self.history_limit = max(1, history_limit or settings.RUN_HISTORY_LIMIT)
        self._threads: Dict[str, threading.Thread] = {}
        self._threads_lock = threading.Lock()

    def _execute(self, orchestrator: Orchestrator) -> None:
        try:
            orchestrator.execute()
        except Exception:
            logger.exception("[RUN %s] Orchestrator crashed", orchestrator.run_id)
        finally:
            with self._threads_lock:
                self._threads.pop(orchestrator.run_id, None)
            dropped = self.registry.prune(self.history_limit)
            if dropped:
                logger.info("Forgot %d finished run(s); %d indexed", len(dropped), len(self.registry))

    def running_threads(self) -> int:
        """Background runs whose worker thread has not finished yet."""
        with self._threads_lock:
            return len(self._threads)

    def submit(self, event: TriggerEvent, background: bool = True) -> SubmitResult:
        decision = self.policy(event)
        if not decision.run:
            return SubmitResult(decision=decision)

        orchestrator = self.orchestrator_factory(self.config, event)
        self.registry.add(orchestrator)
        logger.info("[RUN %s] Accepted (%s) | %d run(s) indexed",
                    orchestrator.run_id, decision.reason, len(self.registry))

        if background:
            thread = threading.Thread(
                target=self._execute,
                args=(orchestrator,),
                name=f"covpipe-run-{orchestrator.run_id}",
                daemon=True,
            )
            with self._threads_lock:
                self._threads[orchestrator.run_id] = thread
            thread.start()
        else:
            self._execute(orchestrator)

        return SubmitResult(decision=decision, run=orchestrator.run)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[PipelineRun]:
        """Block until a background run finishes (or the timeout passes)."""
        orchestrator = self.registry.get(run_id)
        with self._threads_lock:
            thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
        return orchestrator.run if orchestrator is not None else None

    def cancel(self, run_id: str) -> Optional[PipelineRun]:
        orchestrator = self.registry.get(run_id)
        if orchestrator is None:
            return None
        orchestrator.cancel()
        return orchestrator.run

    def shutdown(self, timeout: float = 30) -> None:
        """Cancel every active run and wait up to ``timeout`` seconds for the workers."""
        active = self.registry.active()
        for orchestrator in active:
            orchestrator.cancel()
        with self._threads_lock:
            threads = list(self._threads.values())
        logger.info("Shutting down: cancelled %d active run(s)", len(active))

        deadline = time.monotonic() + timeout
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        if self.running_threads():
            logger.warning("%d run(s) still stopping after %ss", self.running_threads(), timeout)
