"""
Batch Experiment Runner

Runs the same experiment across N provider/model pairs at once.

    start_batch(config, providers)
      -> validate config + every provider's credentials (no rows yet)
      -> create one pending run per provider, in order (stable ids)
      -> open the batch channel, spawn one batch task, return ids

The batch task starts one task per provider and joins them with
gather(return_exceptions=True): a provider failure marks only its own run
failed and emits provider_error; siblings keep going. When all are done the
aggregate (computed from the database) goes out as batch_complete. Every
store call runs in a worker thread, so one provider's database writes never
stall another provider's in-flight request.
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from core.logging import experiment_extra
from models import ExperimentStatus
from services import experiment_progress as events
from services.batch_results import build_batch_results
from services.cost_calculator import CostCalculator
from services.experiment_config import ExperimentConfig, ProviderTarget, validate_targets
from services.experiment_execution import ExperimentExecutor
from services.experiment_progress import ChannelRegistry, ProgressChannel, ProgressEvent
from services.experiment_store import ExperimentStore
from services.journal_store import JournalStore
from services.llm_gateway import LLMGateway

logger = logging.getLogger(__name__)


@dataclass
class BatchState:
    batch_id: str
    run_ids: List[int]
    total: int
    completed: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: Optional[asyncio.Task] = None

    async def record_finished(self) -> int:
        async with self.lock:
            self.completed += 1
            return self.completed


class BatchExperimentRunner:
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

        self._channels: ChannelRegistry[str] = ChannelRegistry()
        self._batches: Dict[str, BatchState] = {}
        self._in_flight_runs: Set[int] = set()
        self._lock = threading.Lock()
        self._watchers: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_batch(
        self,
        config: ExperimentConfig,
        providers: Sequence[Tuple[str, str]],
        cancel_token: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        targets = validate_targets(self.gateway, providers)

        batch_id = str(uuid.uuid4())
        run_ids = []
        for t in targets:
            run_ids.append(await asyncio.to_thread(
                self.store.create_run,
                config.for_provider(t.provider, t.model),
                status=ExperimentStatus.PENDING,
                batch_id=batch_id,
            ))

        state = BatchState(batch_id=batch_id, run_ids=run_ids, total=len(run_ids))
        channel = self._channels.open(batch_id)
        with self._lock:
            self._batches[batch_id] = state
            self._in_flight_runs.update(run_ids)

        state.task = asyncio.create_task(
            self._run_batch(state, config, targets, channel), name=f"experiment-batch-{batch_id}"
        )
        state.task.add_done_callback(lambda t, bid=batch_id: self._on_batch_done(bid))
        if cancel_token is not None:
            watcher = asyncio.create_task(self._watch_cancel(batch_id, state.task, cancel_token))
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)

        logger.info(
            f"Starting batch experiment {batch_id} with {len(targets)} providers "
            f"for athlete {config.athlete_id}: {[t.key for t in targets]}"
        )
        return {"batch_id": batch_id, "run_ids": run_ids}

    def get_progress_channel(self, batch_id: str) -> Optional[ProgressChannel]:
        return self._channels.get(batch_id)

    def is_running(self, batch_id: str) -> bool:
        with self._lock:
            return batch_id in self._batches

    def is_run_in_flight(self, run_id: int) -> bool:
        with self._lock:
            return run_id in self._in_flight_runs

    def cancel(self, batch_id: str) -> bool:
        with self._lock:
            state = self._batches.get(batch_id)
        if state is None or state.task is None or state.task.done():
            return False
        logger.info(f"Cancelling batch experiment {batch_id}")
        state.task.cancel()
        return True

    def get_batch_results(self, batch_id: str) -> Optional[Dict[str, Any]]:
        return build_batch_results(batch_id, self.store.runs_for_batch(batch_id))

    async def wait(self, batch_id: str) -> None:
        with self._lock:
            state = self._batches.get(batch_id)
        if state is not None and state.task is not None:
            await asyncio.gather(state.task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Task bodies
    # ------------------------------------------------------------------

    async def _run_batch(
        self,
        state: BatchState,
        config: ExperimentConfig,
        targets: List[ProviderTarget],
        channel: ProgressChannel,
    ) -> None:
        batch_id = state.batch_id
        try:
            channel.publish(ProgressEvent(
                type=events.BATCH_STARTED,
                message=f"Starting batch experiment with {len(targets)} providers",
                data={"run_ids": state.run_ids, "providers": [t.key for t in targets]},
                batch_id=batch_id,
            ))

            provider_tasks = [
                asyncio.create_task(self._run_provider(state, config.for_provider(t.provider, t.model), run_id, channel))
                for t, run_id in zip(targets, state.run_ids)
            ]
            try:
                await asyncio.gather(*provider_tasks, return_exceptions=True)
            except asyncio.CancelledError:
                for task in provider_tasks:
                    task.cancel()
                raise

            results = await asyncio.to_thread(self.get_batch_results, batch_id)
            channel.publish(ProgressEvent(
                type=events.BATCH_COMPLETE,
                message="Batch experiment completed",
                data=results,
                batch_id=batch_id,
            ))
            logger.info(
                f"Batch experiment {batch_id} completed: status={results['status'] if results else 'empty'}",
                extra=experiment_extra(batch_id=batch_id, status=results["status"] if results else None),
            )
        except asyncio.CancelledError:
            logger.warning(f"Batch experiment {batch_id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Error running batch experiment {batch_id}: {e}", exc_info=True)
            channel.publish(ProgressEvent(
                type=events.BATCH_ERROR,
                message=f"Batch experiment failed: {e}",
                data={"error": str(e)},
                batch_id=batch_id,
            ))
        finally:
            self._channels.close_and_remove(batch_id)

    async def _run_provider(
        self,
        state: BatchState,
        config: ExperimentConfig,
        run_id: int,
        channel: ProgressChannel,
    ) -> None:
        batch_id = state.batch_id

        def event(event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> ProgressEvent:
            return ProgressEvent(
                type=event_type,
                message=message,
                data=data,
                run_id=run_id,
                batch_id=batch_id,
                provider=config.provider,
                model=config.model,
            )

        def emit(event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
            channel.publish(event(event_type, message, data))

        emit(events.PROVIDER_STARTED, f"Starting {config.provider}/{config.model}")
        try:
            await asyncio.to_thread(self.store.mark_running, run_id)
            outcome = await self.executor.execute(run_id, config, emit)
            await asyncio.to_thread(
                self.store.mark_completed, run_id, outcome.tokens_used, outcome.estimated_cost, outcome.entries_used
            )
            finished = await state.record_finished()
            emit(
                events.PROVIDER_COMPLETE,
                f"{config.provider}/{config.model} completed",
                {
                    "tokens": outcome.tokens_used,
                    "cost": float(outcome.estimated_cost),
                    "completed_count": finished,
                    "total_count": state.total,
                },
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Batch {batch_id}: provider {config.provider}/{config.model} failed: {e}",
                exc_info=True,
                extra=experiment_extra(run_id=run_id, batch_id=batch_id, provider=config.provider, model=config.model),
            )
            try:
                await asyncio.to_thread(self.store.mark_failed, run_id, str(e))
            except Exception as store_error:
                logger.error(f"Could not mark run {run_id} failed: {store_error}")
            finished = await state.record_finished()
            emit(
                events.PROVIDER_ERROR,
                f"{config.provider}/{config.model} failed: {e}",
                {"error": str(e), "completed_count": finished, "total_count": state.total},
            )
        finally:
            with self._lock:
                self._in_flight_runs.discard(run_id)

    def _on_batch_done(self, batch_id: str) -> None:
        with self._lock:
            state = self._batches.pop(batch_id, None)
            if state is not None:
                self._in_flight_runs.difference_update(state.run_ids)
        self._channels.close_and_remove(batch_id)

    async def _watch_cancel(self, batch_id: str, task: asyncio.Task, token: asyncio.Event) -> None:
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if waiter in done and not task.done():
                self.cancel(batch_id)
        finally:
            waiter.cancel()


_batch_runner: Optional[BatchExperimentRunner] = None


def get_batch_runner() -> BatchExperimentRunner:
    """Process-wide batch runner (FastAPI dependency)."""
    global _batch_runner
    if _batch_runner is None:
        _batch_runner = BatchExperimentRunner()
    return _batch_runner
