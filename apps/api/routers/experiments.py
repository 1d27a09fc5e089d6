"""
Experiments API Router

Start context-engineering experiments, follow them live over SSE, and read
back persisted runs, batch comparisons and aggregate stats.
"""

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import StreamingResponse
from typing import Optional, AsyncIterator, Dict, Any
from contextlib import aclosing
import asyncio
import json
import logging

from core.config import settings
from core.exceptions import (
    ConflictError,
    ExperimentConfigError,
    NotFoundError,
    RunNotDeletable,
    ValidationError,
)
from schemas import (
    BatchExperimentRequest,
    BatchExperimentResponse,
    BatchResultsResponse,
    ExperimentRunDetailResponse,
    ExperimentRunListResponse,
    ExperimentRunResponse,
    ExperimentStatsResponse,
    RunExperimentRequest,
    RunExperimentResponse,
)
from services.batch_experiment import BatchExperimentRunner, get_batch_runner
from services.experiment_config import build_config
from services.experiment_progress import ProgressChannel
from services.experiment_runner import ExperimentRunner, get_experiment_runner
from services.experiment_store import ExperimentStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/experiments", tags=["Experiments"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # Nginx / some proxies buffer by default; disable buffering when present.
    "X-Accel-Buffering": "no",
}


def get_experiment_store() -> ExperimentStore:
    return ExperimentStore()


def _sse(event_type: str, payload: Dict[str, Any]) -> bytes:
    return b"event: " + event_type.encode("utf-8") + b"\ndata: " + json.dumps(
        payload, default=str
    ).encode("utf-8") + b"\n\n"


def _stream_channel(channel: ProgressChannel) -> StreamingResponse:
    async def _gen() -> AsyncIterator[bytes]:
        # Disconnecting only ends this generator; the run keeps going.
        async with aclosing(channel.stream(heartbeat_s=settings.EXPERIMENT_STREAM_HEARTBEAT_S)) as events:
            async for event in events:
                if event is None:
                    yield _sse("heartbeat", {"type": "heartbeat"})
                else:
                    yield _sse(event.type, event.to_dict())

    return StreamingResponse(_gen(), media_type="text/event-stream", headers=SSE_HEADERS)


def _stream_once(event_type: str, payload: Dict[str, Any]) -> StreamingResponse:
    async def _gen() -> AsyncIterator[bytes]:
        yield _sse(event_type, payload)

    return StreamingResponse(_gen(), media_type="text/event-stream", headers=SSE_HEADERS)


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

@router.post("/run", response_model=RunExperimentResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_experiment(
    request: RunExperimentRequest,
    runner: ExperimentRunner = Depends(get_experiment_runner),
):
    """Start one experiment in the background. Follow it at /runs/{run_id}/stream."""
    try:
        config = build_config(
            experiment_type=request.experiment_type,
            athlete_id=request.athlete_id,
            provider=request.provider,
            model=request.model,
            persona=request.persona,
            temperature=request.temperature,
            entry_order=request.entry_order,
            max_entries=request.max_entries,
            needle_fact=request.needle_fact,
        )
        run_id = await runner.start_run(config)
    except ExperimentConfigError as e:
        raise ValidationError(e.detail, field=e.field)

    return RunExperimentResponse(
        run_id=run_id,
        status="running",
        message=f"Experiment started. Use GET /v1/experiments/runs/{run_id}/stream to monitor progress.",
    )


@router.post("/batch", response_model=BatchExperimentResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_batch_experiment(
    request: BatchExperimentRequest,
    batch_runner: BatchExperimentRunner = Depends(get_batch_runner),
):
    """Start the same experiment across several providers."""
    try:
        config = build_config(
            experiment_type=request.experiment_type,
            athlete_id=request.athlete_id,
            persona=request.persona,
            temperature=request.temperature,
            entry_order=request.entry_order,
            max_entries=request.max_entries,
            needle_fact=request.needle_fact,
        )
        started = await batch_runner.start_batch(
            config, [(p.provider, p.model) for p in request.providers]
        )
    except ExperimentConfigError as e:
        raise ValidationError(e.detail, field=e.field)

    batch_id = started["batch_id"]
    return BatchExperimentResponse(
        batch_id=batch_id,
        run_ids=started["run_ids"],
        status="running",
        message=(
            f"Batch experiment started with {len(started['run_ids'])} providers. "
            f"Use GET /v1/experiments/batch/{batch_id}/stream to monitor progress."
        ),
    )


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

@router.get("/runs", response_model=ExperimentRunListResponse)
def list_runs(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    athlete_id: Optional[int] = None,
    experiment_type: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    batch_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    store: ExperimentStore = Depends(get_experiment_store),
):
    runs = store.list_runs(
        provider=provider,
        model=model,
        athlete_id=athlete_id,
        experiment_type=experiment_type,
        status=status_filter,
        batch_id=batch_id,
        limit=limit,
    )
    return ExperimentRunListResponse(
        runs=[ExperimentRunResponse.from_run(r) for r in runs],
        count=len(runs),
    )


@router.get("/runs/{run_id}", response_model=ExperimentRunDetailResponse)
def get_run(run_id: int, store: ExperimentStore = Depends(get_experiment_store)):
    run = store.get_run(run_id)
    if run is None:
        raise NotFoundError("Experiment run", str(run_id))
    return ExperimentRunDetailResponse.from_run(run)


@router.delete("/runs/{run_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_run(
    run_id: int,
    store: ExperimentStore = Depends(get_experiment_store),
    runner: ExperimentRunner = Depends(get_experiment_runner),
    batch_runner: BatchExperimentRunner = Depends(get_batch_runner),
):
    """Soft delete. Refused (409) while the run is still in flight."""
    in_flight = runner.is_running(run_id) or batch_runner.is_run_in_flight(run_id)
    try:
        deleted = store.soft_delete(run_id, in_flight=in_flight)
    except RunNotDeletable as e:
        raise ConflictError(str(e))
    if not deleted:
        raise NotFoundError("Experiment run", str(run_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/runs/{run_id}/stream")
async def stream_run(
    run_id: int,
    runner: ExperimentRunner = Depends(get_experiment_runner),
    store: ExperimentStore = Depends(get_experiment_store),
):
    """
    Live progress for a run (SSE).

    A finished run gets a single status event built from the stored row.
    """
    channel = runner.get_progress_channel(run_id)
    if channel is not None:
        return _stream_channel(channel)

    run = await asyncio.to_thread(store.get_run, run_id)
    if run is None:
        raise NotFoundError("Experiment run", str(run_id))
    return _stream_once("status", {
        "type": "status",
        "run_id": run.id,
        "status": run.status,
        "tokens": run.tokens_used,
        "cost": float(run.estimated_cost or 0),
        "error": run.error_message,
    })


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

@router.get("/batch/{batch_id}", response_model=BatchResultsResponse)
def get_batch_results(
    batch_id: str,
    batch_runner: BatchExperimentRunner = Depends(get_batch_runner),
):
    results = batch_runner.get_batch_results(batch_id)
    if results is None:
        raise NotFoundError("Batch", batch_id)
    return results


@router.get("/batch/{batch_id}/stream")
async def stream_batch(
    batch_id: str,
    batch_runner: BatchExperimentRunner = Depends(get_batch_runner),
):
    channel = batch_runner.get_progress_channel(batch_id)
    if channel is not None:
        return _stream_channel(channel)

    results = await asyncio.to_thread(batch_runner.get_batch_results, batch_id)
    if results is None:
        raise NotFoundError("Batch", batch_id)
    return _stream_once("status", {"type": "status", **results})


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

@router.get("/stats", response_model=ExperimentStatsResponse)
def get_stats(store: ExperimentStore = Depends(get_experiment_store)):
    return store.summary()
