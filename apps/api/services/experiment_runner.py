"""
Experiment Runner (single run orchestrator)

start_run() validates, writes the run row (status running), opens a progress
channel and spawns one asyncio task. It returns the run id straight away; the
task does the provider calls and finalizes the row. Store calls run in worker
threads so a database round-trip never stalls other runs or SSE heartbeats.

Run tasks and channels live in in-process registries until the run is
terminal. Nothing here survives a restart: a run left in running after a
crash stays that way.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Set

from core.logging import experiment_extra
from models import ExperimentStatus
from services import experiment_progress as events
from services.cost_calculator import CostCalculator
from services.experiment_config import ExperimentConfig
from services.experiment_execution import ExperimentExecutor
from services.experiment_progress import ChannelRegistry, ProgressChannel, ProgressEvent
from services.experiment_store import ExperimentStore
from services.journal_store import JournalStore
from services.llm_gateway import LLMGateway

logger = logging.getLogger(__name__)


class ExperimentRunner:
    def __init__(
        self,
        gateway: Optional[LLMGateway] = None,
        store: Optional[ExperimentStore] = None,
        journal: Optional[JournalStore] = None,
        costs: Optional[CostCalculator] = None,
    ):
        self.gateway = gateway or LLMGateway()
        self.store = store or ExperimentStore()
        self.journal = journal or JournalStore()
        self.executor = ExperimentExecutor(self.gateway, self.journal, self.store, costs)

        self._channels: ChannelRegistry[int] = ChannelRegistry()
        self._tasks: Dict[int, asyncio.Task] = {}
        self._tasks_lock = threading.Lock()
        self._watchers: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_run(self, config: ExperimentConfig, cancel_token: Optional[asyncio.Event] = None) -> int:
        """
        Start one experiment in the background and return its run id.

        Raises ExperimentConfigError (before any row exists) for an unknown
        or unconfigured provider.
        """
        self.gateway.validate_provider(config.provider, config.model)

        run_id = await asyncio.to_thread(self.store.create_run, config, status=ExperimentStatus.RUNNING)
        channel = self._channels.open(run_id)
        channel.publish(self._event(run_id, config, events.PROGRESS, "Starting experiment..."))

        task = asyncio.create_task(self._run(run_id, config, channel), name=f"experiment-run-{run_id}")
        with self._tasks_lock:
            self._tasks[run_id] = task
        task.add_done_callback(lambda t, rid=run_id: self._on_task_done(rid, t))

        if cancel_token is not None:
            watcher = asyncio.create_task(self._watch_cancel(run_id, task, cancel_token))
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)

        logger.info(
            f"Started experiment run {run_id}: {config.experiment_type.value} "
            f"{config.provider}/{config.model} athlete={config.athlete_id}",
            extra=experiment_extra(
                run_id=run_id,
                provider=config.provider,
                model=config.model,
                experiment_type=config.experiment_type.value,
            ),
        )
        return run_id

    def get_progress_channel(self, run_id: int) -> Optional[ProgressChannel]:
        return self._channels.get(run_id)

    def is_running(self, run_id: int) -> bool:
        with self._tasks_lock:
            task = self._tasks.get(run_id)
        return task is not None and not task.done()

    def cancel(self, run_id: int) -> bool:
        with self._tasks_lock:
            task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        logger.info(f"Cancelling experiment run {run_id}")
        task.cancel()
        return True

    async def wait(self, run_id: int) -> None:
        """Await a run's task if it is still registered."""
        with self._tasks_lock:
            task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Task body
    # ------------------------------------------------------------------

    async def _run(self, run_id: int, config: ExperimentConfig, channel: ProgressChannel) -> None:
        def emit(event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
            channel.publish(self._event(run_id, config, event_type, message, data))

        try:
            outcome = await self.executor.execute(run_id, config, emit)
            await asyncio.to_thread(
                self.store.mark_completed, run_id, outcome.tokens_used, outcome.estimated_cost, outcome.entries_used
            )
            emit(
                events.COMPLETE,
                "Experiment completed successfully",
                {
                    "run_id": run_id,
                    "tokens": outcome.tokens_used,
                    "cost": float(outcome.estimated_cost),
                    "entries_used": outcome.entries_used,
                    **outcome.data,
                },
            )
        except asyncio.CancelledError:
            # Left in its current state; cancellation is not a failure.
            logger.warning(f"Experiment run {run_id} cancelled", extra=experiment_extra(run_id=run_id))
            raise
        except Exception as e:
            logger.error(
                f"Experiment run {run_id} failed: {e}",
                exc_info=True,
                extra=experiment_extra(run_id=run_id, provider=config.provider, model=config.model),
            )
            try:
                await asyncio.to_thread(self.store.mark_failed, run_id, str(e))
            except Exception as store_error:
                logger.error(f"Could not mark run {run_id} failed: {store_error}")
            emit(events.ERROR, f"Experiment failed: {e}", {"run_id": run_id, "error": str(e)})
        finally:
            self._channels.close_and_remove(run_id)

    def _on_task_done(self, run_id: int, task: asyncio.Task) -> None:
        with self._tasks_lock:
            self._tasks.pop(run_id, None)
        # A task cancelled before its first step never reaches its finally.
        self._channels.close_and_remove(run_id)

    async def _watch_cancel(self, run_id: int, task: asyncio.Task, token: asyncio.Event) -> None:
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if waiter in done and not task.done():
                self.cancel(run_id)
        finally:
            waiter.cancel()

    @staticmethod
    def _event(
        run_id: int,
        config: ExperimentConfig,
        event_type: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> ProgressEvent:
        return ProgressEvent(
            type=event_type,
            message=message,
            data=data,
            run_id=run_id,
            provider=config.provider,
            model=config.model,
        )


_runner: Optional[ExperimentRunner] = None


def get_experiment_runner() -> ExperimentRunner:
    """Process-wide runner (FastAPI dependency)."""
    global _runner
    if _runner is None:
        _runner = ExperimentRunner()
    return _runner
