from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Float, DateTime, ForeignKey, Numeric, Text, String, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from core.database import Base
from core.exceptions import InvalidStatusTransition
from enum import Enum
from decimal import Decimal
from typing import Optional
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.FAILED)


class ExperimentType(str, Enum):
    POSITION = "position"
    PERSONA = "persona"
    COMPRESSION = "compression"


class NeedlePosition(str, Enum):
    START = "start"
    MIDDLE = "middle"
    END = "end"


class ClaimType(str, Enum):
    INJURY = "injury"
    EMOTION = "emotion"
    SKIPPED = "skipped"
    EVENT = "event"
    BARRIER = "barrier"
    PROGRESS = "progress"


# Allowed lifecycle moves. Completed/failed are absorbing.
_ALLOWED_TRANSITIONS = {
    ExperimentStatus.PENDING: {ExperimentStatus.RUNNING},
    ExperimentStatus.RUNNING: {ExperimentStatus.COMPLETED, ExperimentStatus.FAILED},
    ExperimentStatus.COMPLETED: set(),
    ExperimentStatus.FAILED: set(),
}


class JournalEntry(Base):
    """
    Athlete journal entry.

    Authored by the journal CRUD surface; the experiment harness only reads it.
    """
    __tablename__ = "journal_entry"

    id = Column(Integer, primary_key=True, autoincrement=True)
    athlete_id = Column(Integer, nullable=False, index=True)
    entry_date = Column(DateTime(timezone=True), nullable=False)
    emotional_state = Column(Text, nullable=False, default="")
    session_reflection = Column(Text, nullable=False, default="")
    mental_barriers = Column(Text, nullable=False, default="")
    is_flagged = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_journal_entry_athlete_date", "athlete_id", "entry_date"),
    )


class ExperimentRun(Base):
    """
    One context-engineering trial against one provider/model.

    Configuration columns are written once at creation. Lifecycle columns
    move through pending -> running -> completed|failed via transition_to().
    """
    __tablename__ = "experiment_run"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Shared by every run started together in one batch (uuid4 string)
    batch_id = Column(String(36), nullable=True, index=True)

    # --- CONFIGURATION (immutable after creation) ---
    provider = Column(String(50), nullable=False)
    model = Column(String(100), nullable=False)
    temperature = Column(Float, nullable=False, default=0.7)
    prompt_version = Column(String(50), nullable=False, default="v1")
    athlete_id = Column(Integer, nullable=False, index=True)
    persona = Column(String(50), nullable=False, default="lasso")
    experiment_type = Column(String(20), nullable=False, default=ExperimentType.PERSONA.value)
    entry_order = Column(String(20), nullable=False, default="reverse")  # 'reverse' or 'chronological'
    max_entries = Column(Integer, nullable=True)
    needle_fact = Column(Text, nullable=True)  # Position runs only

    # --- LIFECYCLE ---
    status = Column(String(20), nullable=False, default=ExperimentStatus.PENDING.value, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    tokens_used = Column(Integer, nullable=False, default=0)
    estimated_cost = Column(Numeric(14, 8), nullable=False, default=Decimal("0"))
    entries_used = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # Soft delete: row stays, every read filters it out
    is_deleted = Column(Boolean, nullable=False, default=False)

    claims = relationship(
        "ExperimentClaim",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="ExperimentClaim.id",
    )
    position_tests = relationship(
        "PositionTest",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="PositionTest.id",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_experiment_run_status",
        ),
        CheckConstraint(
            "experiment_type IN ('position', 'persona', 'compression')",
            name="ck_experiment_run_type",
        ),
        Index("ix_experiment_run_started_at", "started_at"),
    )

    @property
    def status_enum(self) -> ExperimentStatus:
        return ExperimentStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum.is_terminal

    @property
    def provider_key(self) -> str:
        return f"{self.provider}/{self.model}"

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None or self.started_at is None:
            return None
        return (_aware(self.completed_at) - _aware(self.started_at)).total_seconds()

    def transition_to(self, new_status: ExperimentStatus, at: Optional[datetime] = None) -> None:
        """
        Move the run to new_status.

        completed_at is stamped exactly once, on the terminal transition.
        """
        current = self.status_enum
        if new_status not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidStatusTransition(
                f"Run {self.id}: cannot move from {current.value} to {new_status.value}"
            )
        self.status = new_status.value
        if new_status.is_terminal:
            self.completed_at = at or _utcnow()

    def __repr__(self):
        return f"<ExperimentRun(id={self.id}, {self.provider_key}, type={self.experiment_type}, status={self.status})>"


class ExperimentClaim(Base):
    """Atomic claim extracted from a persona summary. Append-only."""
    __tablename__ = "experiment_claim"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("experiment_run.id"), nullable=False, index=True)
    claim_text = Column(Text, nullable=False)
    claim_type = Column(String(20), nullable=False)
    persona = Column(String(50), nullable=False)
    is_supported = Column(Boolean, nullable=False, default=False)
    confidence = Column(Float, nullable=False, default=0.0)
    referenced_date = Column(DateTime(timezone=True), nullable=True)

    run = relationship("ExperimentRun", back_populates="claims")
    receipts = relationship(
        "ClaimReceipt",
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimReceipt.id",
    )

    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_experiment_claim_confidence"),
    )


class ClaimReceipt(Base):
    """Evidence linking a claim to the journal entry that supports it."""
    __tablename__ = "claim_receipt"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(Integer, ForeignKey("experiment_claim.id"), nullable=False, index=True)
    journal_entry_id = Column(Integer, nullable=False)
    matched_snippet = Column(Text, nullable=False)
    entry_date = Column(DateTime(timezone=True), nullable=False)
    confidence = Column(Float, nullable=False)

    claim = relationship("ExperimentClaim", back_populates="receipts")

    __table_args__ = (
        # Matches under the support threshold are "no evidence" and never stored
        CheckConstraint("confidence >= 0.3 AND confidence <= 1", name="ck_claim_receipt_confidence"),
    )


class PositionTest(Base):
    """Needle-in-context retrieval outcome for one position."""
    __tablename__ = "position_test"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("experiment_run.id"), nullable=False, index=True)
    position = Column(String(10), nullable=False)  # 'start', 'middle', 'end'
    needle_fact = Column(Text, nullable=False)
    fact_retrieved = Column(Boolean, nullable=False)
    response_snippet = Column(Text, nullable=False, default="")

    run = relationship("ExperimentRun", back_populates="position_tests")

    __table_args__ = (
        CheckConstraint("position IN ('start', 'middle', 'end')", name="ck_position_test_position"),
    )


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip; treat naive values as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
