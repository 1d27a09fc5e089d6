"""
Experiment configuration and its validation.

Validation runs synchronously when a run or batch is requested. Anything
rejected here raises ExperimentConfigError before a single row is written.
"""

from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from core.config import settings
from core.exceptions import ExperimentConfigError
from models import ExperimentType
from services.experiment_context import ENTRY_ORDERS, normalize_persona


@dataclass(frozen=True)
class ExperimentConfig:
    """
    What to run. provider/model are empty on a batch template and filled
    per provider with for_provider().
    """
    experiment_type: ExperimentType
    athlete_id: int
    provider: str = ""
    model: str = ""
    persona: str = "lasso"
    temperature: float = 0.7
    entry_order: str = "reverse"
    max_entries: Optional[int] = None
    needle_fact: Optional[str] = None
    prompt_version: str = settings.EXPERIMENT_PROMPT_VERSION

    def for_provider(self, provider: str, model: str) -> "ExperimentConfig":
        return replace(self, provider=provider.strip().lower(), model=model.strip())


@dataclass(frozen=True)
class ProviderTarget:
    provider: str
    model: str

    @property
    def key(self) -> str:
        return f"{self.provider}/{self.model}"


def parse_experiment_type(value) -> ExperimentType:
    if isinstance(value, ExperimentType):
        return value
    try:
        return ExperimentType(str(value).strip().lower())
    except ValueError:
        raise ExperimentConfigError(
            f"Unknown experiment type: {value}. Use 'position', 'persona' or 'compression'.",
            field="experiment_type",
        )


def build_config(
    experiment_type,
    athlete_id: int,
    provider: str = "",
    model: str = "",
    persona: str = "lasso",
    temperature: float = 0.7,
    entry_order: str = "reverse",
    max_entries: Optional[int] = None,
    needle_fact: Optional[str] = None,
    prompt_version: Optional[str] = None,
) -> ExperimentConfig:
    """Normalize raw request values into a validated ExperimentConfig."""
    kind = parse_experiment_type(experiment_type)
    persona_key = normalize_persona(persona)

    order = (entry_order or "reverse").strip().lower()
    if order not in ENTRY_ORDERS:
        raise ExperimentConfigError(
            f"Unknown entry order: {entry_order}. Use 'reverse' or 'chronological'.",
            field="entry_order",
        )
    if not 0.0 <= temperature <= 2.0:
        raise ExperimentConfigError("Temperature must be between 0 and 2", field="temperature")
    if max_entries is not None and max_entries < 1:
        raise ExperimentConfigError("max_entries must be at least 1", field="max_entries")

    needle = None
    if kind == ExperimentType.POSITION:
        needle = (needle_fact or "").strip() or settings.EXPERIMENT_DEFAULT_NEEDLE_FACT

    return ExperimentConfig(
        experiment_type=kind,
        athlete_id=athlete_id,
        provider=(provider or "").strip().lower(),
        model=(model or "").strip(),
        persona=persona_key,
        temperature=temperature,
        entry_order=order,
        max_entries=max_entries,
        needle_fact=needle,
        prompt_version=prompt_version or settings.EXPERIMENT_PROMPT_VERSION,
    )


def validate_targets(gateway, targets: Sequence[Tuple[str, str]]) -> List[ProviderTarget]:
    """Every provider must be known and credentialed; the list must not be empty."""
    if not targets:
        raise ExperimentConfigError("At least one provider is required", field="providers")
    validated = []
    for provider, model in targets:
        gateway.validate_provider(provider, model)
        validated.append(ProviderTarget(provider=provider.strip().lower(), model=model.strip()))
    return validated
