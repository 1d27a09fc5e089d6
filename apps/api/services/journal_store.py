"""
Journal Store (read side)

The experiment harness reads journal entries but never writes them.
Rows are copied into plain JournalEntryData snapshots so nothing ORM-bound
outlives the session that loaded it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List

from core.database import session_scope
from models import JournalEntry


@dataclass(frozen=True)
class JournalEntryData:
    id: int
    athlete_id: int
    entry_date: datetime
    emotional_state: str = ""
    session_reflection: str = ""
    mental_barriers: str = ""
    is_flagged: bool = False

    @classmethod
    def from_row(cls, row: JournalEntry) -> "JournalEntryData":
        return cls(
            id=row.id,
            athlete_id=row.athlete_id,
            entry_date=row.entry_date,
            emotional_state=row.emotional_state or "",
            session_reflection=row.session_reflection or "",
            mental_barriers=row.mental_barriers or "",
            is_flagged=bool(row.is_flagged),
        )


class JournalStore:
    """entries_for(athlete_id) over the journal_entry table."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def entries_for(self, athlete_id: int) -> List[JournalEntryData]:
        """All entries for an athlete, newest first."""
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(JournalEntry)
                .filter(JournalEntry.athlete_id == athlete_id)
                .order_by(JournalEntry.entry_date.desc(), JournalEntry.id.desc())
                .all()
            )
            return [JournalEntryData.from_row(r) for r in rows]

