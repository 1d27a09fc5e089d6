"""
Claim Verifier Tests

The verifier turns persona summaries into claims and checks each one
against the journal entries that were in the prompt. It is pure and
deterministic, so these tests build entries in memory.
"""

import pytest
import re
from datetime import datetime

from models import ClaimType
from services.claim_verifier import (
    SUPPORT_THRESHOLD,
    ClaimMatcher,
    ClaimVerifier,
    ExtractedClaim,
    extract_and_verify,
    extract_claim_sentences,
    extract_key_terms,
    jaccard_similarity,
)
from services.journal_store import JournalEntryData
from tests.experiment_helpers import ATHLETE_ID, JOURNAL


# ===========================================================================
# Fixtures
# ===========================================================================

@pytest.fixture
def entries():
    return [
        JournalEntryData(
            id=i + 1,
            athlete_id=ATHLETE_ID,
            entry_date=entry_date,
            emotional_state=emotional,
            session_reflection=reflection,
            mental_barriers=barriers,
        )
        for i, (entry_date, emotional, reflection, barriers) in enumerate(JOURNAL)
    ]


@pytest.fixture
def verifier():
    return ClaimVerifier()


TUESDAY_ENTRY_ID = 2  # 2026-01-06
FRIDAY_ENTRY_ID = 5  # 2026-01-09


# ===========================================================================
# Sentence extraction
# ===========================================================================

class TestSentenceExtraction:
    """Only sentences addressed to the athlete are candidates."""

    def test_requires_you_or_your(self):
        text = "The athlete improved this week. You reported shin splints on Tuesday."
        assert extract_claim_sentences(text) == ["You reported shin splints on Tuesday."]

    def test_short_sentences_are_dropped(self):
        assert extract_claim_sentences("You did.") == []

    def test_your_counts_as_address(self):
        sentences = extract_claim_sentences("Your confidence improved after the tempo run!")
        assert sentences == ["Your confidence improved after the tempo run!"]

    def test_word_boundary_on_you(self):
        # "youth" is not "you"
        assert extract_claim_sentences("The youth squad trained hard today.") == []


class TestKeyTerms:
    def test_stop_words_and_short_words_removed(self):
        assert extract_key_terms("You reported shin splints on Tuesday.") == [
            "reported", "shin", "splints", "tuesday",
        ]

    def test_terms_are_distinct_in_first_seen_order(self):
        assert extract_key_terms("pain pain more pain") == ["pain", "more"]

    def test_jaccard(self):
        assert jaccard_similarity("shin splints hurt", "shin splints hurt") == 1.0
        assert jaccard_similarity("", "anything here") == 0.0


# ===========================================================================
# Classification
# ===========================================================================

class TestClassification:
    """First matching shape decides the claim kind."""

    @pytest.mark.parametrize("sentence,kind", [
        ("You reported shin splints on Tuesday.", ClaimType.INJURY),
        ("You mentioned some soreness in your calves.", ClaimType.INJURY),
        ("Your confidence improved over the week.", ClaimType.EMOTION),
        ("You felt anxious before the long run.", ClaimType.EMOTION),
        ("You skipped your Wednesday session.", ClaimType.SKIPPED),
        ("You completed a strong tempo run.", ClaimType.EVENT),
        ("You struggled with pacing discipline.", ClaimType.BARRIER),
        ("You made progress in your recovery.", ClaimType.PROGRESS),
    ])
    def test_claim_kind(self, verifier, sentence, kind):
        matcher = verifier.classify(sentence)
        assert matcher is not None
        assert matcher.kind == kind

    def test_unmatched_sentence_is_not_a_claim(self, verifier, entries):
        assert verifier.extract_and_verify("You are a legend, keep it up.", entries) == []


# ===========================================================================
# Verification
# ===========================================================================

class TestVerification:
    def test_shin_splints_claim_is_supported(self, verifier, entries):
        claims = verifier.extract_and_verify("You reported shin splints on Tuesday.", entries)

        assert len(claims) == 1
        claim = claims[0]
        assert claim.claim_type == ClaimType.INJURY
        assert claim.is_supported is True
        assert 0.3 <= claim.confidence <= 1.0
        assert claim.matched_entry_id == TUESDAY_ENTRY_ID
        assert "shin splints" in claim.matched_snippet.lower()
        assert claim.referenced_date == datetime(2026, 1, 6, 7, 0)

    def test_snippet_is_a_substring_of_the_entry(self, verifier, entries):
        claim = verifier.extract_and_verify("You reported shin splints on Tuesday.", entries)[0]
        tuesday = next(e for e in entries if e.id == TUESDAY_ENTRY_ID)
        fields = (tuesday.emotional_state, tuesday.session_reflection, tuesday.mental_barriers)
        assert any(claim.matched_snippet in field for field in fields)

    def test_emotion_claim_matches_sentiment(self, verifier, entries):
        claims = verifier.extract_and_verify("You felt confident and energized on Friday.", entries)

        assert len(claims) == 1
        assert claims[0].claim_type == ClaimType.EMOTION
        assert claims[0].is_supported
        assert claims[0].matched_entry_id == FRIDAY_ENTRY_ID

    def test_claim_without_evidence_is_unsupported(self, verifier, entries):
        claims = verifier.extract_and_verify("You mentioned a hamstring cramp.", entries)

        assert len(claims) == 1
        claim = claims[0]
        assert claim.is_supported is False
        assert claim.confidence == 0.0
        assert claim.matched_entry_id is None
        assert claim.matched_snippet == ""
        assert claim.has_receipt is False

    def test_no_address_means_no_claims(self, verifier, entries):
        assert verifier.extract_and_verify("The athlete improved this week.", entries) == []

    def test_empty_summary(self, verifier, entries):
        assert verifier.extract_and_verify("   ", entries) == []

    def test_no_entries_means_unsupported(self, verifier):
        claims = verifier.extract_and_verify("You reported shin splints on Tuesday.", [])
        assert len(claims) == 1
        assert not claims[0].is_supported
        assert claims[0].referenced_date is None

    def test_supported_claims_always_carry_a_receipt(self, verifier, entries):
        summary = (
            "You reported shin splints on Tuesday. You skipped training on Wednesday. "
            "You felt confident and energized on Friday. You struggled with pacing discipline."
        )
        for claim in verifier.extract_and_verify(summary, entries):
            if claim.is_supported:
                assert claim.has_receipt
                assert claim.confidence >= 0.3

    def test_confidence_is_clamped(self, verifier, entries):
        summary = "You reported shin splints pain, soreness and an ache on Tuesday."
        for claim in verifier.extract_and_verify(summary, entries):
            assert 0.0 <= claim.confidence <= 1.0

    def test_single_entry_shin_splints(self, verifier):
        entry = JournalEntryData(
            id=9,
            athlete_id=ATHLETE_ID,
            entry_date=datetime(2026, 1, 6, 7, 0),
            emotional_state="Tired",
            session_reflection="Had to cut the interval session short because of shin splints",
            mental_barriers="None",
        )

        claims = verifier.extract_and_verify("You reported having shin splints during training.", [entry])

        assert [(c.claim_type, c.is_supported) for c in claims] == [(ClaimType.INJURY, True)]
        assert claims[0].confidence > SUPPORT_THRESHOLD
        assert claims[0].matched_entry_id == 9
        assert "shin splints" in claims[0].matched_snippet


class TestSupportThreshold:
    """
    A matcher whose bonus is the whole score: the sentence shares no words
    with the entry and names no weekday.
    """

    ENTRY = JournalEntryData(
        id=1,
        athlete_id=ATHLETE_ID,
        entry_date=datetime(2026, 1, 5, 7, 0),
        emotional_state="Calm",
        session_reflection="Easy jog",
        mental_barriers="None",
    )

    @staticmethod
    def _verifier(bonus):
        matcher = ClaimMatcher(ClaimType.EVENT, re.compile(r"you\s+completed", re.IGNORECASE), lambda c, e: bonus)
        return ClaimVerifier(matchers=[matcher])

    def test_just_below_threshold_is_unsupported(self):
        claims = self._verifier(0.29999).extract_and_verify("You completed zzzq.", [self.ENTRY])

        assert len(claims) == 1
        assert claims[0].is_supported is False
        assert claims[0].confidence == 0.0
        assert claims[0].matched_entry_id is None

    def test_exactly_at_threshold_is_supported(self):
        claims = self._verifier(SUPPORT_THRESHOLD).extract_and_verify("You completed zzzq.", [self.ENTRY])

        assert len(claims) == 1
        assert claims[0].is_supported is True
        assert claims[0].confidence == pytest.approx(SUPPORT_THRESHOLD)
        assert claims[0].matched_entry_id == 1
        assert claims[0].matched_snippet == "Calm"


class TestDeduplication:
    def test_near_duplicate_sentences_collapse(self, verifier, entries):
        summary = "You reported shin splints on Tuesday. You reported shin splints on Tuesday!"
        assert len(verifier.extract_and_verify(summary, entries)) == 1

    def test_higher_confidence_duplicate_wins(self):
        low = ExtractedClaim("You reported shin splints on Tuesday.", ClaimType.INJURY, False, 0.0)
        high = ExtractedClaim("You reported shin splints on Tuesday!", ClaimType.INJURY, True, 0.7)
        assert ClaimVerifier.deduplicate([low, high]) == [high]

    def test_distinct_claims_are_kept(self):
        a = ExtractedClaim("You reported shin splints on Tuesday.", ClaimType.INJURY)
        b = ExtractedClaim("You felt confident and energized on Friday.", ClaimType.EMOTION)
        assert ClaimVerifier.deduplicate([a, b]) == [a, b]


class TestDeterminism:
    def test_same_input_same_output(self, entries):
        summary = (
            "You reported shin splints on Tuesday. You felt confident and energized on Friday. "
            "You mentioned a hamstring cramp."
        )
        assert extract_and_verify(summary, entries) == extract_and_verify(summary, entries)
