"""
Experiment Store

All reads and writes of experiment_run and its children. Each write opens
its own short session; callers get detached objects with children already
loaded and never hold a session across an LLM call.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import selectinload

from core.database import session_scope
from core.exceptions import RunNotDeletable
from models import (
    ClaimReceipt,
    ExperimentClaim,
    ExperimentRun,
    ExperimentStatus,
    NeedlePosition,
    PositionTest,
)
from services.claim_verifier import ExtractedClaim
from services.experiment_config import ExperimentConfig

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


def _eager():
    return (
        selectinload(ExperimentRun.claims).selectinload(ExperimentClaim.receipts),
        selectinload(ExperimentRun.position_tests),
    )


class ExperimentStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_run(
        self,
        config: ExperimentConfig,
        status: ExperimentStatus = ExperimentStatus.RUNNING,
        batch_id: Optional[str] = None,
    ) -> int:
        """Insert the run row and return its id. Single runs start in running."""
        with self._scope() as db:
            run = ExperimentRun(
                batch_id=batch_id,
                provider=config.provider,
                model=config.model,
                temperature=config.temperature,
                prompt_version=config.prompt_version,
                athlete_id=config.athlete_id,
                persona=config.persona,
                experiment_type=config.experiment_type.value,
                entry_order=config.entry_order,
                max_entries=config.max_entries,
                needle_fact=config.needle_fact,
                status=status.value,
                started_at=datetime.now(timezone.utc),
            )
            db.add(run)
            db.flush()
            run_id = run.id
        logger.info(
            f"Created experiment run {run_id}: {config.experiment_type.value} "
            f"{config.provider}/{config.model} status={status.value} batch={batch_id}"
        )
        return run_id

    def mark_running(self, run_id: int) -> None:
        with self._scope() as db:
            run = self._require(db, run_id)
            run.transition_to(ExperimentStatus.RUNNING)
            run.started_at = datetime.now(timezone.utc)

    def mark_completed(self, run_id: int, tokens_used: int, estimated_cost: Decimal, entries_used: int) -> None:
        with self._scope() as db:
            run = self._require(db, run_id)
            run.tokens_used = tokens_used
            run.estimated_cost = estimated_cost
            run.entries_used = entries_used
            run.transition_to(ExperimentStatus.COMPLETED)
        logger.info(f"Run {run_id} completed: tokens={tokens_used} cost={estimated_cost}")

    def mark_failed(
        self,
        run_id: int,
        error_message: str,
        entries_used: Optional[int] = None,
        tokens_used: Optional[int] = None,
        estimated_cost: Optional[Decimal] = None,
    ) -> None:
        with self._scope() as db:
            run = self._require(db, run_id)
            if entries_used is not None:
                run.entries_used = entries_used
            if tokens_used is not None:
                run.tokens_used = tokens_used
            if estimated_cost is not None:
                run.estimated_cost = estimated_cost
            run.error_message = error_message
            run.transition_to(ExperimentStatus.FAILED)
        logger.warning(f"Run {run_id} failed: {error_message}")

    def add_position_test(
        self,
        run_id: int,
        position: NeedlePosition,
        needle_fact: str,
        fact_retrieved: bool,
        response_snippet: str,
    ) -> int:
        with self._scope() as db:
            row = PositionTest(
                run_id=run_id,
                position=position.value,
                needle_fact=needle_fact,
                fact_retrieved=fact_retrieved,
                response_snippet=response_snippet,
            )
            db.add(row)
            db.flush()
            return row.id

    def add_claim(self, run_id: int, persona: str, claim: ExtractedClaim) -> int:
        """Persist a claim plus one receipt when it is supported."""
        with self._scope() as db:
            row = ExperimentClaim(
                run_id=run_id,
                claim_text=claim.claim_text,
                claim_type=claim.claim_type.value,
                persona=persona,
                is_supported=claim.is_supported,
                confidence=claim.confidence,
                referenced_date=claim.referenced_date,
            )
            if claim.has_receipt:
                row.receipts.append(
                    ClaimReceipt(
                        journal_entry_id=claim.matched_entry_id,
                        matched_snippet=claim.matched_snippet,
                        entry_date=claim.matched_entry_date,
                        confidence=claim.confidence,
                    )
                )
            db.add(row)
            db.flush()
            return row.id

    def soft_delete(self, run_id: int, in_flight: bool = False) -> bool:
        """
        Hide a terminal run from every read. Returns False when the run does
        not exist (or is already deleted).
        """
        with self._scope() as db:
            run = self._active(db).filter(ExperimentRun.id == run_id).first()
            if run is None:
                return False
            if in_flight or not run.is_terminal:
                raise RunNotDeletable(f"Run {run_id} is still {run.status}; it can be deleted once it finishes")
            run.is_deleted = True
        logger.info(f"Soft-deleted experiment run {run_id}")
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _active(db):
        return db.query(ExperimentRun).filter(ExperimentRun.is_deleted.is_(False))

    @staticmethod
    def _require(db, run_id: int) -> ExperimentRun:
        run = db.query(ExperimentRun).filter(ExperimentRun.id == run_id).first()
        if run is None:
            raise LookupError(f"Experiment run {run_id} does not exist")
        return run

    def get_run(self, run_id: int) -> Optional[ExperimentRun]:
        with self._scope() as db:
            return self._active(db).options(*_eager()).filter(ExperimentRun.id == run_id).first()

    def list_runs(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        athlete_id: Optional[int] = None,
        experiment_type: Optional[str] = None,
        status: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[ExperimentRun]:
        with self._scope() as db:
            query = self._active(db).options(*_eager())
            if provider:
                query = query.filter(ExperimentRun.provider == provider.lower())
            if model:
                query = query.filter(ExperimentRun.model == model)
            if athlete_id is not None:
                query = query.filter(ExperimentRun.athlete_id == athlete_id)
            if experiment_type:
                query = query.filter(ExperimentRun.experiment_type == experiment_type.lower())
            if status:
                query = query.filter(ExperimentRun.status == status.lower())
            if batch_id:
                query = query.filter(ExperimentRun.batch_id == batch_id)
            return (
                query.order_by(ExperimentRun.started_at.desc(), ExperimentRun.id.desc())
                .limit(limit)
                .all()
            )

    def runs_for_batch(self, batch_id: str) -> List[ExperimentRun]:
        with self._scope() as db:
            return (
                self._active(db)
                .options(*_eager())
                .filter(ExperimentRun.batch_id == batch_id)
                .order_by(ExperimentRun.id)
                .all()
            )

    def summary(self) -> Dict[str, Any]:
        """Totals across every non-deleted run."""
        with self._scope() as db:
            runs = self._active(db).all()
            run_ids = [r.id for r in runs]

            total_claims = supported_claims = 0
            position_rows = []
            if run_ids:
                total_claims = (
                    db.query(func.count(ExperimentClaim.id))
                    .filter(ExperimentClaim.run_id.in_(run_ids))
                    .scalar()
                    or 0
                )
                supported_claims = (
                    db.query(func.count(ExperimentClaim.id))
                    .filter(ExperimentClaim.run_id.in_(run_ids), ExperimentClaim.is_supported.is_(True))
                    .scalar()
                    or 0
                )
                position_rows = (
                    db.query(PositionTest.position, PositionTest.fact_retrieved)
                    .filter(PositionTest.run_id.in_(run_ids))
                    .all()
                )

        completed = [r for r in runs if r.status == ExperimentStatus.COMPLETED.value]
        failed = [r for r in runs if r.status == ExperimentStatus.FAILED.value]

        retrieval: Dict[str, List[bool]] = {}
        for position, retrieved in position_rows:
            retrieval.setdefault(position, []).append(bool(retrieved))

        return {
            "total_runs": len(runs),
            "completed_runs": len(completed),
            "failed_runs": len(failed),
            "total_claims": total_claims,
            "supported_claims": supported_claims,
            "total_position_tests": len(position_rows),
            "success_rate": (len(completed) / len(runs) * 100) if runs else 0.0,
            "average_tokens_used": (sum(r.tokens_used or 0 for r in completed) // len(completed)) if completed else 0,
            "total_cost": sum((Decimal(r.estimated_cost or 0) for r in completed), Decimal("0")),
            "position_retrieval_rates": {
                position: sum(values) / len(values) * 100 for position, values in retrieval.items()
            },
        }
