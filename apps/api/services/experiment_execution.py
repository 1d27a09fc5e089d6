"""
Experiment Execution

The per-type algorithms (position, compression, persona). Both the single-run
and the batch orchestrator call ExperimentExecutor.execute(); neither knows
how an experiment type works internally.

The executor writes child rows (position tests, claims) as it goes and
reports through an emit callback. It never touches run status: the caller
owns the lifecycle. Database work runs in worker threads (asyncio.to_thread)
so the event loop only ever waits on provider calls.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import ExperimentDataError
from models import ExperimentType, NeedlePosition
from services import experiment_progress as events
from services.claim_verifier import ClaimVerifier
from services.cost_calculator import CostCalculator
from services.experiment_config import ExperimentConfig
from services.experiment_context import (
    LIMITED_CONTEXT_ENTRIES,
    PERSONAS,
    ContextOptions,
    SummaryGenerator,
    apply_context_options,
    inject_needle_entry,
    needle_fact_retrieved,
    position_conclusion,
)
from services.experiment_store import ExperimentStore
from services.journal_store import JournalEntryData, JournalStore
from services.llm_gateway import LLMGateway

logger = logging.getLogger(__name__)

# emit(event_type, message, data)
Emit = Callable[[str, str, Optional[Dict[str, Any]]], None]

MIN_POSITION_ENTRIES = 3
EVENT_SNIPPET_LENGTH = 200
CLAIM_MESSAGE_LENGTH = 50


def _noop_emit(event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
    return None


@dataclass
class ExecutionOutcome:
    tokens_used: int = 0
    estimated_cost: Decimal = Decimal("0")
    entries_used: int = 0
    data: Dict[str, Any] = field(default_factory=dict)


class ExperimentExecutor:
    def __init__(
        self,
        gateway: LLMGateway,
        journal: JournalStore,
        store: ExperimentStore,
        costs: Optional[CostCalculator] = None,
        verifier: Optional[ClaimVerifier] = None,
    ):
        self.gateway = gateway
        self.journal = journal
        self.store = store
        self.costs = costs or CostCalculator()
        self.verifier = verifier or ClaimVerifier()
        self.summaries = SummaryGenerator(gateway)

    async def execute(self, run_id: int, config: ExperimentConfig, emit: Optional[Emit] = None) -> ExecutionOutcome:
        emit = emit or _noop_emit
        entries = await asyncio.to_thread(self.journal.entries_for, config.athlete_id)

        if config.experiment_type == ExperimentType.POSITION:
            return await self._run_position(run_id, config, entries, emit)
        if config.experiment_type == ExperimentType.COMPRESSION:
            return await self._run_compression(run_id, config, entries, emit)
        return await self._run_persona(run_id, config, entries, emit)

    def _context_options(self, config: ExperimentConfig) -> ContextOptions:
        return ContextOptions(max_entries=config.max_entries, entry_order=config.entry_order)

    # ------------------------------------------------------------------
    # Position (needle in context)
    # ------------------------------------------------------------------

    async def _run_position(
        self,
        run_id: int,
        config: ExperimentConfig,
        entries: List[JournalEntryData],
        emit: Emit,
    ) -> ExecutionOutcome:
        needle = config.needle_fact
        ordered = apply_context_options(entries, self._context_options(config))
        if len(ordered) < MIN_POSITION_ENTRIES:
            raise ExperimentDataError(
                f"Insufficient entries for position test (need at least {MIN_POSITION_ENTRIES}, have {len(ordered)})"
            )

        emit(events.PROGRESS, f"Running position test with needle fact: {needle}", None)

        outcome = ExecutionOutcome(entries_used=len(ordered))
        found: Dict[str, bool] = {}
        for position in NeedlePosition:
            context = inject_needle_entry(ordered, needle, position)
            summary = await self.summaries.generate(
                context,
                persona=config.persona,
                provider=config.provider,
                model=config.model,
                temperature=config.temperature,
                options=ContextOptions(include_metadata=True),
            )
            retrieved = needle_fact_retrieved(summary.summary, needle)
            found[position.value] = retrieved

            outcome.tokens_used += summary.tokens_used
            outcome.estimated_cost += self.costs.calculate_cost(
                config.provider, config.model, summary.input_tokens, summary.output_tokens
            )

            await asyncio.to_thread(
                self.store.add_position_test, run_id, position, needle, retrieved, summary.summary
            )
            emit(
                events.POSITION,
                f"Position {position.value}: {'Found' if retrieved else 'Not found'}",
                {
                    "position": position.value,
                    "found": retrieved,
                    "total_entries": len(context),
                    "snippet": summary.summary[:EVENT_SNIPPET_LENGTH],
                },
            )

        conclusion = position_conclusion(
            found[NeedlePosition.START.value], found[NeedlePosition.MIDDLE.value], found[NeedlePosition.END.value]
        )
        logger.info(f"Position run {run_id} ({config.provider}/{config.model}): {conclusion}")
        outcome.data = {"needle_fact": needle, "results": found, "conclusion": conclusion}
        return outcome

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    async def _run_compression(
        self,
        run_id: int,
        config: ExperimentConfig,
        entries: List[JournalEntryData],
        emit: Emit,
    ) -> ExecutionOutcome:
        emit(events.PROGRESS, "Running compression test with full, compressed, and limited contexts...", None)

        ordered = apply_context_options(entries, ContextOptions(entry_order=config.entry_order))
        most_recent = apply_context_options(entries, ContextOptions(max_entries=LIMITED_CONTEXT_ENTRIES))
        variants = (
            ("full_context", "Full Context (Raw)", ordered, ContextOptions(include_metadata=True)),
            ("compressed_context", "All Entries (Compressed)", ordered,
             ContextOptions(compress_entries=True, include_metadata=False)),
            ("limited_context", f"Last {LIMITED_CONTEXT_ENTRIES} Entries (Raw)",
             apply_context_options(most_recent, ContextOptions(entry_order=config.entry_order)),
             ContextOptions(include_metadata=True)),
        )

        results: Dict[str, Dict[str, Any]] = {}
        total_tokens = 0
        for key, label, context, options in variants:
            summary = await self.summaries.generate(
                context,
                persona=config.persona,
                provider=config.provider,
                model=config.model,
                temperature=config.temperature,
                options=options,
            )
            total_tokens += summary.tokens_used
            results[key] = {
                "label": label,
                "entries": summary.entries_used,
                "tokens": summary.tokens_used,
                "compressed": options.compress_entries,
            }

        conclusion = (
            f"Token comparison: Full={results['full_context']['tokens']}, "
            f"Compressed={results['compressed_context']['tokens']}, "
            f"Limited={results['limited_context']['tokens']}"
        )
        emit(events.COMPRESSION, "Compression test completed", {**results, "conclusion": conclusion})

        return ExecutionOutcome(
            tokens_used=total_tokens,
            estimated_cost=self.costs.calculate_split_cost(config.provider, config.model, total_tokens),
            entries_used=len(ordered),
            data={"conclusion": conclusion},
        )

    # ------------------------------------------------------------------
    # Persona (claims + receipts)
    # ------------------------------------------------------------------

    async def _run_persona(
        self,
        run_id: int,
        config: ExperimentConfig,
        entries: List[JournalEntryData],
        emit: Emit,
    ) -> ExecutionOutcome:
        context = apply_context_options(entries, self._context_options(config))
        outcome = ExecutionOutcome(entries_used=len(context))
        claim_counts: Dict[str, Dict[str, int]] = {}

        for persona in PERSONAS:
            emit(events.PROGRESS, f"Generating summary with {persona} persona...", None)
            summary = await self.summaries.generate(
                context,
                persona=persona,
                provider=config.provider,
                model=config.model,
                temperature=config.temperature,
                options=ContextOptions(include_metadata=True),
            )
            outcome.tokens_used += summary.tokens_used
            outcome.estimated_cost += self.costs.calculate_cost(
                config.provider, config.model, summary.input_tokens, summary.output_tokens
            )

            emit(events.PROGRESS, f"Extracting claims from {persona} response...", None)
            claims = self.verifier.extract_and_verify(summary.summary, context)

            for claim in claims:
                await asyncio.to_thread(self.store.add_claim, run_id, persona, claim)
                emit(
                    events.CLAIM,
                    f"[{persona}] Claim: {claim.claim_text[:CLAIM_MESSAGE_LENGTH]}...",
                    {
                        "persona": persona,
                        "claim": claim.claim_text,
                        "claim_type": claim.claim_type.value,
                        "is_supported": claim.is_supported,
                        "confidence": claim.confidence,
                        "has_evidence": claim.has_receipt,
                    },
                )

            claim_counts[persona] = {
                "total": len(claims),
                "supported": sum(1 for c in claims if c.is_supported),
            }

        outcome.data = {"claims": claim_counts}
        return outcome
