"""
Batch results aggregation.

Everything here is computed from persisted runs, so results are identical
whether they are read mid-batch, at batch_complete, or a week later.
Comparisons only consider completed runs; failed runs still appear in the
per-provider list with their error.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from models import ExperimentRun, ExperimentStatus, NeedlePosition


def batch_status(statuses: Iterable[str]) -> str:
    """
    completed: every run completed
    failed:    every run failed
    partial:   every run terminal, mixed outcomes
    running:   anything still pending or running
    """
    values = [ExperimentStatus(s) for s in statuses]
    if not values:
        return "running"
    if all(s == ExperimentStatus.COMPLETED for s in values):
        return "completed"
    if all(s == ExperimentStatus.FAILED for s in values):
        return "failed"
    if all(s.is_terminal for s in values):
        return "partial"
    return "running"


def _money(value) -> float:
    return float(Decimal(value or 0))


def _receipt_dict(receipt) -> Dict[str, Any]:
    return {
        "entry_id": receipt.journal_entry_id,
        "date": receipt.entry_date.isoformat() if receipt.entry_date else None,
        "snippet": receipt.matched_snippet,
        "source": f"Entry #{receipt.journal_entry_id}",
        "confidence": receipt.confidence,
    }


def claims_by_persona(run: ExperimentRun) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for claim in run.claims:
        grouped.setdefault(claim.persona.lower(), []).append({
            "id": claim.id,
            "claim": claim.claim_text,
            "claim_type": claim.claim_type,
            "is_supported": claim.is_supported,
            "confidence": claim.confidence,
            "receipts": [_receipt_dict(r) for r in claim.receipts],
        })
    return grouped


def position_results(run: ExperimentRun) -> Optional[Dict[str, Any]]:
    if not run.position_tests:
        return None
    results: Dict[str, Any] = {}
    for test in run.position_tests:
        results[test.position] = {
            "found": test.fact_retrieved,
            "snippet": test.response_snippet,
            "needle_fact": test.needle_fact,
        }
    return results


def provider_result(run: ExperimentRun) -> Dict[str, Any]:
    return {
        "run_id": run.id,
        "provider": run.provider,
        "model": run.model,
        "status": run.status,
        "tokens_used": run.tokens_used or 0,
        "estimated_cost": _money(run.estimated_cost),
        "duration_seconds": run.duration_seconds,
        "error_message": run.error_message,
        "position_results": position_results(run),
        "persona_claims": claims_by_persona(run) or None,
    }


def build_cost_comparison(completed: List[ExperimentRun]) -> Dict[str, Any]:
    cost_by_provider: Dict[str, float] = {}
    tokens_by_provider: Dict[str, int] = {}
    duration_by_provider: Dict[str, float] = {}
    for run in completed:
        key = run.provider_key
        cost_by_provider[key] = _money(run.estimated_cost)
        tokens_by_provider[key] = run.tokens_used or 0
        if run.completed_at is not None:
            duration_by_provider[key] = run.duration_seconds

    return {
        "cost_by_provider": cost_by_provider,
        "tokens_by_provider": tokens_by_provider,
        "duration_by_provider": duration_by_provider,
        "cheapest_provider": min(cost_by_provider, key=cost_by_provider.get) if cost_by_provider else None,
        "fastest_provider": min(duration_by_provider, key=duration_by_provider.get) if duration_by_provider else None,
    }


def build_position_comparison(completed: List[ExperimentRun]) -> Optional[Dict[str, Dict[str, bool]]]:
    if not any(run.position_tests for run in completed):
        return None
    comparison: Dict[str, Dict[str, bool]] = {
        f"{position.value}_found": {} for position in NeedlePosition
    }
    for run in completed:
        for test in run.position_tests:
            comparison[f"{test.position}_found"][run.provider_key] = test.fact_retrieved
    return comparison


def build_claim_comparison(completed: List[ExperimentRun]) -> Optional[Dict[str, Dict[str, Any]]]:
    if not any(run.claims for run in completed):
        return None
    return {run.provider_key: claims_by_persona(run) for run in completed if run.claims}


def build_cost_summary(completed: List[ExperimentRun]) -> Dict[str, Any]:
    total_cost = sum((Decimal(r.estimated_cost or 0) for r in completed), Decimal("0"))
    total_tokens = sum(r.tokens_used or 0 for r in completed)
    count = len(completed)

    cheapest = min(completed, key=lambda r: Decimal(r.estimated_cost or 0), default=None)
    most_expensive = max(completed, key=lambda r: Decimal(r.estimated_cost or 0), default=None)

    return {
        "total_cost": float(total_cost),
        "total_tokens": total_tokens,
        "average_cost_per_provider": float(total_cost / count) if count else 0.0,
        "average_tokens_per_provider": total_tokens // count if count else 0,
        "currency": "USD",
        "cheapest_provider": cheapest.provider_key if cheapest else None,
        "cheapest_provider_cost": _money(cheapest.estimated_cost) if cheapest else 0.0,
        "most_expensive_provider": most_expensive.provider_key if most_expensive else None,
        "most_expensive_provider_cost": _money(most_expensive.estimated_cost) if most_expensive else 0.0,
    }


def build_batch_results(batch_id: str, runs: List[ExperimentRun]) -> Optional[Dict[str, Any]]:
    """Aggregate a batch's runs (children loaded). None when the batch has no runs."""
    if not runs:
        return None

    status = batch_status(r.status for r in runs)
    completed = [r for r in runs if r.status == ExperimentStatus.COMPLETED.value]
    failed = [r for r in runs if r.status == ExperimentStatus.FAILED.value]
    first = runs[0]

    finished_at = [r.completed_at for r in runs if r.completed_at is not None]
    results: Dict[str, Any] = {
        "batch_id": batch_id,
        "experiment_type": first.experiment_type,
        "athlete_id": first.athlete_id,
        "status": status,
        "started_at": min(r.started_at for r in runs).isoformat(),
        "completed_at": max(finished_at).isoformat() if status != "running" and finished_at else None,
        "total_providers": len(runs),
        "completed_providers": len(completed),
        "failed_providers": len(failed),
        "provider_results": [provider_result(r) for r in runs],
        "comparison": None,
        "cost_summary": None,
    }

    if completed:
        results["comparison"] = {
            "cost_comparison": build_cost_comparison(completed),
            "position_comparison": build_position_comparison(completed),
            "claim_comparison": build_claim_comparison(completed),
        }
        results["cost_summary"] = build_cost_summary(completed)

    return results
