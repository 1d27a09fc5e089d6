"""
Experiment Context

Prompt construction for persona summaries and the context manipulations the
experiments vary: entry count, ordering, compression and needle position.

Nothing in here talks to the database. Entries come in as JournalEntryData
snapshots and prompts go out through the LLM gateway.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from core.exceptions import ExperimentConfigError
from models import NeedlePosition
from services.journal_store import JournalEntryData
from services.llm_gateway import LLMGateway

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Personas
# ---------------------------------------------------------------------------

GOGGINS_PROMPT = """You are a mental performance coach in the style of David Goggins.

VOICE & TONE:
- Direct, challenging, no-nonsense
- Push the athlete to embrace discomfort
- Call out excuses without being cruel
- Acknowledge genuine effort and progress
- Use short, punchy sentences
- Occasional intensity: "Stay hard." "Who's gonna carry the boats?"

CRITICAL RULES:
- ALWAYS accurately reference specific facts from their journal entries
- NEVER make up details that aren't in the entries
- If they mentioned a specific barrier (e.g., "shin splints"), address it directly
- Challenge their mental barriers, not their physical limitations

Generate a weekly mental performance summary for this athlete."""

LASSO_PROMPT = """You are a mental performance coach in the style of Ted Lasso.

VOICE & TONE:
- Warm, encouraging, genuinely optimistic
- Believe in the athlete's potential
- Find positives even in difficult weeks
- Acknowledge struggles with empathy, not dismissal
- Use folksy wisdom and occasional humor
- "Be a goldfish" energy - help them let go of bad days

CRITICAL RULES:
- ALWAYS accurately reference specific facts from their journal entries
- NEVER make up details that aren't in the entries
- If they mentioned a specific struggle, acknowledge it with compassion
- Build confidence without being fake or saccharine

Generate a weekly mental performance summary for this athlete."""

PERSONA_PROMPTS = {
    "goggins": GOGGINS_PROMPT,
    "lasso": LASSO_PROMPT,
}

# Persona experiments always compare these two, in this order.
PERSONAS = ("goggins", "lasso")

ENTRY_ORDERS = ("reverse", "chronological")

COMPRESSED_FIELD_LENGTH = 50
LIMITED_CONTEXT_ENTRIES = 7

# Words that never count as evidence of needle retrieval.
NEEDLE_STOP_WORDS = frozenset({
    "that", "this", "with", "from", "have", "been", "were", "about", "after",
    "before", "during", "into", "over", "when", "then", "there", "their", "some",
})


def normalize_persona(persona: str) -> str:
    key = (persona or "").strip().lower()
    if key not in PERSONA_PROMPTS:
        raise ExperimentConfigError(
            f"Unknown persona: {persona}. Use 'goggins' or 'lasso'.", field="persona"
        )
    return key


def get_persona_prompt(persona: str) -> str:
    return PERSONA_PROMPTS[normalize_persona(persona)]


# ---------------------------------------------------------------------------
# Context options
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContextOptions:
    """How the journal is turned into prompt context."""
    max_entries: Optional[int] = None
    entry_order: str = "reverse"  # 'reverse' (newest first) or 'chronological'
    compress_entries: bool = False
    include_metadata: bool = True


def apply_context_options(
    entries: Sequence[JournalEntryData],
    options: ContextOptions,
) -> List[JournalEntryData]:
    """Order and limit entries. Order is fixed here and never changed later."""
    result = list(entries)

    result.sort(
        key=lambda e: _as_utc(e.entry_date),
        reverse=options.entry_order != "chronological",
    )

    if options.max_entries is not None:
        result = result[: max(0, options.max_entries)]

    return result


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _truncate(text: str, max_length: int) -> str:
    if not text:
        return ""
    return text if len(text) <= max_length else text[:max_length] + "..."


def format_entry(entry: JournalEntryData, options: ContextOptions) -> str:
    lines = []
    if options.include_metadata:
        flag = " [FLAGGED]" if entry.is_flagged else ""
        lines.append(f"--- Entry #{entry.id} | {entry.entry_date:%Y-%m-%d}{flag} ---")

    if options.compress_entries:
        lines.append(
            f"Feeling: {_truncate(entry.emotional_state, COMPRESSED_FIELD_LENGTH)} | "
            f"Reflection: {_truncate(entry.session_reflection, COMPRESSED_FIELD_LENGTH)} | "
            f"Barriers: {_truncate(entry.mental_barriers, COMPRESSED_FIELD_LENGTH)}"
        )
    else:
        lines.append(f"Emotional State: {entry.emotional_state}")
        lines.append(f"Session Reflection: {entry.session_reflection}")
        lines.append(f"Mental Barriers: {entry.mental_barriers}")
    return "\n".join(lines)


def build_summary_prompt(entries: Sequence[JournalEntryData], options: ContextOptions) -> str:
    """User prompt for a weekly summary over entries, in the order given."""
    parts = ["Here are the athlete's recent journal entries:", ""]
    for entry in entries:
        parts.append(format_entry(entry, options))
        parts.append("")
    parts.extend([
        "---",
        "",
        "Based on these entries, generate a weekly mental performance summary.",
        "Include: key patterns observed, areas of strength, concerns to address, "
        "and one specific actionable recommendation.",
    ])
    return "\n".join(parts) + "\n"


def estimate_tokens(*texts: str) -> int:
    """Rough token count: characters / 4."""
    return sum(len(t or "") for t in texts) // 4


# ---------------------------------------------------------------------------
# Needle-in-context
# ---------------------------------------------------------------------------

NEEDLE_ENTRY_ID = -1


def build_needle_entry(
    needle_fact: str, athlete_id: int, now: Optional[datetime] = None
) -> JournalEntryData:
    """Fabricated journal entry that carries the needle fact."""
    now = now or datetime.now(timezone.utc)
    return JournalEntryData(
        id=NEEDLE_ENTRY_ID,
        athlete_id=athlete_id,
        entry_date=now - timedelta(days=1),
        emotional_state="Concerned about a specific issue",
        session_reflection=f"Today's session was affected by {needle_fact}. This has been bothering me.",
        mental_barriers=f"Dealing with {needle_fact} and trying to stay focused.",
        is_flagged=False,
    )


def needle_insert_index(count: int, position: NeedlePosition) -> int:
    if position == NeedlePosition.START:
        return 0
    if position == NeedlePosition.END:
        return count
    return count // 2


def inject_needle_entry(
    entries: Sequence[JournalEntryData],
    needle_fact: str,
    position: NeedlePosition,
    now: Optional[datetime] = None,
) -> List[JournalEntryData]:
    """
    Insert the needle entry at start (0), middle (count // 2) or end (count).

    The list is not re-sorted afterwards; position is relative to the
    order the caller already chose.
    """
    result = list(entries)
    if not result:
        raise ValueError("Cannot inject a needle into an empty entry list")
    needle = build_needle_entry(needle_fact, result[0].athlete_id, now=now)
    result.insert(needle_insert_index(len(result), position), needle)
    return result


def needle_content_words(needle_fact: str) -> List[str]:
    words = (w.strip(".,;:!?\"'()") for w in needle_fact.lower().split())
    return [w for w in words if len(w) > 3 and w not in NEEDLE_STOP_WORDS]


def needle_fact_retrieved(summary: str, needle_fact: str) -> bool:
    """Whole needle (case-insensitive) or any of its content words in the summary."""
    text = (summary or "").lower()
    if needle_fact.lower() in text:
        return True
    return any(word in text for word in needle_content_words(needle_fact))


def position_conclusion(start_found: bool, middle_found: bool, end_found: bool) -> str:
    if start_found and not middle_found and end_found:
        return "U-CURVE CONFIRMED: Middle position showed retrieval failure."
    if start_found and middle_found and end_found:
        return "No position effect detected - all positions retrieved successfully."
    if not (start_found or middle_found or end_found):
        return "Fact not retrieved in any position - may need different needle fact."
    return f"Mixed results: Start={start_found}, Middle={middle_found}, End={end_found}"


# ---------------------------------------------------------------------------
# Summary generation
# ---------------------------------------------------------------------------

@dataclass
class SummaryResult:
    persona: str
    summary: str
    entries_used: int
    tokens_used: int
    input_tokens: int
    output_tokens: int
    latency_ms: int
    prompt_chars: int


class SummaryGenerator:
    """Persona summary over an already-prepared list of entries."""

    def __init__(self, gateway: LLMGateway):
        self.gateway = gateway

    async def generate(
        self,
        entries: Sequence[JournalEntryData],
        persona: str,
        provider: str,
        model: str,
        temperature: float = 0.7,
        options: Optional[ContextOptions] = None,
    ) -> SummaryResult:
        options = options or ContextOptions()
        system_prompt = get_persona_prompt(persona)
        user_prompt = build_summary_prompt(entries, options)

        result = await self.gateway.generate(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            provider=provider,
            model=model,
            temperature=temperature,
        )

        input_tokens = result.input_tokens or estimate_tokens(system_prompt, user_prompt)
        output_tokens = result.output_tokens or estimate_tokens(result.text)

        logger.info(
            f"Summary generated: persona={persona} {provider}/{model} "
            f"entries={len(entries)} tokens={input_tokens + output_tokens} latency={result.latency_ms}ms"
        )

        return SummaryResult(
            persona=persona,
            summary=result.text,
            entries_used=len(entries),
            tokens_used=input_tokens + output_tokens,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=result.latency_ms,
            prompt_chars=len(user_prompt),
        )
