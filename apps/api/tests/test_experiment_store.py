"""
Tests for experiment run persistence: lifecycle, children, soft delete and
the stats summary.
"""
import pytest
from datetime import datetime
from decimal import Decimal

from core.exceptions import ExperimentConfigError, InvalidStatusTransition, RunNotDeletable
from models import ClaimType, ExperimentStatus, ExperimentType, NeedlePosition
from services.claim_verifier import ExtractedClaim
from services.experiment_config import build_config
from tests.experiment_helpers import ATHLETE_ID


@pytest.fixture
def persona_config():
    return build_config("persona", ATHLETE_ID, provider="openai", model="gpt-4o-mini")


class TestBuildConfig:
    def test_defaults(self, persona_config):
        assert persona_config.experiment_type == ExperimentType.PERSONA
        assert persona_config.persona == "lasso"
        assert persona_config.entry_order == "reverse"
        assert persona_config.needle_fact is None

    def test_position_run_gets_default_needle(self):
        config = build_config("position", ATHLETE_ID, provider="openai", model="gpt-4o-mini")
        assert config.needle_fact

    def test_provider_is_normalized(self):
        config = build_config("compression", ATHLETE_ID, provider=" OpenAI ", model=" gpt-4o ")
        assert (config.provider, config.model) == ("openai", "gpt-4o")

    @pytest.mark.parametrize("kwargs,field", [
        ({"experiment_type": "haystack"}, "experiment_type"),
        ({"persona": "yoda"}, "persona"),
        ({"entry_order": "random"}, "entry_order"),
        ({"temperature": 2.5}, "temperature"),
        ({"max_entries": 0}, "max_entries"),
    ])
    def test_rejections_name_the_field(self, kwargs, field):
        params = {"experiment_type": "persona", "athlete_id": ATHLETE_ID}
        params.update(kwargs)
        with pytest.raises(ExperimentConfigError) as exc_info:
            build_config(**params)
        assert exc_info.value.field == field


class TestLifecycle:
    def test_single_run_starts_running(self, store, persona_config):
        run_id = store.create_run(persona_config)
        run = store.get_run(run_id)

        assert run.status == "running"
        assert run.started_at is not None
        assert run.completed_at is None
        assert run.provider == "openai"

    def test_complete_stamps_completed_at_once(self, store, persona_config):
        run_id = store.create_run(persona_config)
        store.mark_completed(run_id, tokens_used=300, estimated_cost=Decimal("0.00009"), entries_used=7)

        run = store.get_run(run_id)
        assert run.status == "completed"
        assert run.completed_at is not None
        assert run.tokens_used == 300
        assert run.entries_used == 7
        assert Decimal(run.estimated_cost) == Decimal("0.00009")
        assert run.duration_seconds >= 0

    def test_terminal_states_are_absorbing(self, store, persona_config):
        run_id = store.create_run(persona_config)
        store.mark_failed(run_id, "boom")

        with pytest.raises(InvalidStatusTransition):
            store.mark_completed(run_id, 1, Decimal("0"), 1)
        assert store.get_run(run_id).status == "failed"
        assert store.get_run(run_id).error_message == "boom"

    def test_batch_run_goes_pending_to_running(self, store, persona_config):
        run_id = store.create_run(persona_config, status=ExperimentStatus.PENDING, batch_id="b-1")
        assert store.get_run(run_id).status == "pending"

        store.mark_running(run_id)
        assert store.get_run(run_id).status == "running"

    def test_pending_cannot_complete_directly(self, store, persona_config):
        run_id = store.create_run(persona_config, status=ExperimentStatus.PENDING)
        with pytest.raises(InvalidStatusTransition):
            store.mark_completed(run_id, 1, Decimal("0"), 1)

    def test_unknown_run(self, store):
        assert store.get_run(9999) is None
        with pytest.raises(LookupError):
            store.mark_running(9999)


class TestChildren:
    def test_supported_claim_gets_one_receipt(self, store, persona_config):
        run_id = store.create_run(persona_config)
        supported = ExtractedClaim(
            claim_text="You reported shin splints on Tuesday.",
            claim_type=ClaimType.INJURY,
            is_supported=True,
            confidence=0.64,
            referenced_date=datetime(2026, 1, 6, 7, 0),
            matched_entry_id=2,
            matched_entry_date=datetime(2026, 1, 6, 7, 0),
            matched_snippet="Shin splints pain on my left leg is hard",
        )
        unsupported = ExtractedClaim("You mentioned a hamstring cramp.", ClaimType.INJURY)

        store.add_claim(run_id, "goggins", supported)
        store.add_claim(run_id, "goggins", unsupported)

        run = store.get_run(run_id)
        assert len(run.claims) == 2
        assert len(run.claims[0].receipts) == 1
        assert run.claims[0].receipts[0].journal_entry_id == 2
        assert run.claims[0].receipts[0].confidence >= 0.3
        assert run.claims[1].receipts == []
        assert run.claims[1].confidence == 0.0

    def test_position_tests_keep_insert_order(self, store):
        config = build_config("position", ATHLETE_ID, provider="openai", model="gpt-4o-mini")
        run_id = store.create_run(config)
        for position in (NeedlePosition.START, NeedlePosition.MIDDLE, NeedlePosition.END):
            store.add_position_test(run_id, position, config.needle_fact, position != NeedlePosition.MIDDLE, "snippet")

        tests = store.get_run(run_id).position_tests
        assert [t.position for t in tests] == ["start", "middle", "end"]
        assert [t.fact_retrieved for t in tests] == [True, False, True]


class TestSoftDelete:
    def test_deleted_run_disappears_from_reads(self, store, persona_config):
        run_id = store.create_run(persona_config)
        store.mark_completed(run_id, 10, Decimal("0"), 1)

        assert store.soft_delete(run_id) is True
        assert store.get_run(run_id) is None
        assert store.list_runs() == []
        assert store.summary()["total_runs"] == 0

    def test_second_delete_reports_missing(self, store, persona_config):
        run_id = store.create_run(persona_config)
        store.mark_failed(run_id, "x")
        store.soft_delete(run_id)
        assert store.soft_delete(run_id) is False

    def test_running_run_cannot_be_deleted(self, store, persona_config):
        run_id = store.create_run(persona_config)
        with pytest.raises(RunNotDeletable):
            store.soft_delete(run_id)
        assert store.get_run(run_id) is not None

    def test_in_flight_flag_wins_over_status(self, store, persona_config):
        run_id = store.create_run(persona_config)
        store.mark_completed(run_id, 10, Decimal("0"), 1)
        with pytest.raises(RunNotDeletable):
            store.soft_delete(run_id, in_flight=True)


class TestListRuns:
    def test_filters(self, store, persona_config):
        a = store.create_run(persona_config)
        b = store.create_run(persona_config.for_provider("anthropic", "claude-3-haiku"))
        store.mark_completed(a, 10, Decimal("0"), 1)

        assert [r.id for r in store.list_runs(provider="anthropic")] == [b]
        assert [r.id for r in store.list_runs(status="completed")] == [a]
        assert {r.id for r in store.list_runs(athlete_id=ATHLETE_ID)} == {a, b}
        assert store.list_runs(experiment_type="position") == []

    def test_newest_first_and_limit(self, store, persona_config):
        ids = [store.create_run(persona_config) for _ in range(3)]
        listed = store.list_runs(limit=2)
        assert [r.id for r in listed] == [ids[2], ids[1]]

    def test_runs_for_batch(self, store, persona_config):
        ids = [
            store.create_run(persona_config, status=ExperimentStatus.PENDING, batch_id="batch-1")
            for _ in range(2)
        ]
        store.create_run(persona_config)
        assert [r.id for r in store.runs_for_batch("batch-1")] == ids


class TestSummary:
    def test_empty(self, store):
        summary = store.summary()
        assert summary["total_runs"] == 0
        assert summary["success_rate"] == 0.0
        assert summary["total_cost"] == Decimal("0")

    def test_totals(self, store, persona_config):
        done = store.create_run(persona_config)
        store.add_claim(done, "lasso", ExtractedClaim(
            "You reported shin splints on Tuesday.", ClaimType.INJURY, True, 0.6,
            matched_entry_id=2, matched_entry_date=datetime(2026, 1, 6), matched_snippet="shin splints",
        ))
        store.add_claim(done, "lasso", ExtractedClaim("You mentioned a hamstring cramp.", ClaimType.INJURY))
        store.mark_completed(done, 300, Decimal("0.00009"), 7)

        failed = store.create_run(persona_config)
        store.mark_failed(failed, "nope")

        summary = store.summary()
        assert summary["total_runs"] == 2
        assert summary["completed_runs"] == 1
        assert summary["failed_runs"] == 1
        assert summary["total_claims"] == 2
        assert summary["supported_claims"] == 1
        assert summary["success_rate"] == 50.0
        assert summary["average_tokens_used"] == 300
        assert summary["total_cost"] == Decimal("0.00009")

    def test_position_retrieval_rates(self, store):
        config = build_config("position", ATHLETE_ID, provider="openai", model="gpt-4o-mini")
        run_id = store.create_run(config)
        store.add_position_test(run_id, NeedlePosition.START, config.needle_fact, True, "")
        store.add_position_test(run_id, NeedlePosition.MIDDLE, config.needle_fact, False, "")

        rates = store.summary()["position_retrieval_rates"]
        assert rates == {"start": 100.0, "middle": 0.0}
