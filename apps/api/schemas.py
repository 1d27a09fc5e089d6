from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional, List, Dict, Any


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class RunExperimentRequest(BaseModel):
    """Start one experiment against one provider/model."""
    experiment_type: str = "persona"  # position, persona, compression
    athlete_id: int
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    persona: str = "lasso"
    temperature: float = 0.7
    entry_order: str = "reverse"  # reverse (newest first) or chronological
    max_entries: Optional[int] = None
    needle_fact: Optional[str] = None  # Position experiments only


class ProviderModelPair(BaseModel):
    provider: str
    model: str


class BatchExperimentRequest(BaseModel):
    """Run the same experiment across several providers concurrently."""
    experiment_type: str = "persona"
    athlete_id: int
    providers: List[ProviderModelPair] = Field(default_factory=list)
    persona: str = "lasso"
    temperature: float = 0.7
    entry_order: str = "reverse"
    max_entries: Optional[int] = None
    needle_fact: Optional[str] = None


# ---------------------------------------------------------------------------
# Start responses
# ---------------------------------------------------------------------------

class RunExperimentResponse(BaseModel):
    run_id: int
    status: str
    message: str


class BatchExperimentResponse(BaseModel):
    batch_id: str
    run_ids: List[int]
    status: str
    message: str


# ---------------------------------------------------------------------------
# Run detail
# ---------------------------------------------------------------------------

class ClaimReceiptResponse(BaseModel):
    id: int
    journal_entry_id: int
    matched_snippet: str
    entry_date: datetime
    confidence: float

    model_config = ConfigDict(from_attributes=True)


class ExperimentClaimResponse(BaseModel):
    id: int
    claim_text: str
    claim_type: str
    persona: str
    is_supported: bool
    confidence: float
    referenced_date: Optional[datetime] = None
    receipts: List[ClaimReceiptResponse] = []

    model_config = ConfigDict(from_attributes=True)


class PositionTestResponse(BaseModel):
    id: int
    position: str
    needle_fact: str
    fact_retrieved: bool
    response_snippet: str

    model_config = ConfigDict(from_attributes=True)


class ExperimentRunResponse(BaseModel):
    """Run row as listed; counts instead of children."""
    id: int
    batch_id: Optional[str] = None
    provider: str
    model: str
    temperature: float
    prompt_version: str
    athlete_id: int
    persona: str
    experiment_type: str
    entry_order: str
    max_entries: Optional[int] = None
    needle_fact: Optional[str] = None
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    tokens_used: int
    estimated_cost: float
    entries_used: int
    error_message: Optional[str] = None
    claim_count: int = 0
    supported_claim_count: int = 0
    position_test_count: int = 0

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_run(cls, run) -> "ExperimentRunResponse":
        response = cls.model_validate(run)
        response.claim_count = len(run.claims)
        response.supported_claim_count = sum(1 for c in run.claims if c.is_supported)
        response.position_test_count = len(run.position_tests)
        return response


class ExperimentRunDetailResponse(ExperimentRunResponse):
    claims: List[ExperimentClaimResponse] = []
    position_tests: List[PositionTestResponse] = []


class ExperimentRunListResponse(BaseModel):
    runs: List[ExperimentRunResponse]
    count: int


# ---------------------------------------------------------------------------
# Batch results
# ---------------------------------------------------------------------------

class ProviderResultResponse(BaseModel):
    run_id: int
    provider: str
    model: str
    status: str
    tokens_used: int
    estimated_cost: float
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None
    position_results: Optional[Dict[str, Dict[str, Any]]] = None
    persona_claims: Optional[Dict[str, List[Dict[str, Any]]]] = None


class BatchResultsResponse(BaseModel):
    batch_id: str
    experiment_type: str
    athlete_id: int
    status: str  # running, completed, partial, failed
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_providers: int
    completed_providers: int
    failed_providers: int
    provider_results: List[ProviderResultResponse]
    comparison: Optional[Dict[str, Any]] = None
    cost_summary: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

class ExperimentStatsResponse(BaseModel):
    total_runs: int
    completed_runs: int
    failed_runs: int
    total_claims: int
    supported_claims: int
    total_position_tests: int
    success_rate: float
    average_tokens_used: int
    total_cost: float
    position_retrieval_rates: Dict[str, float] = {}
