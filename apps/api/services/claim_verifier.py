"""
Claim Verifier

Turns a persona's free-text weekly summary into atomic claims and checks
each one against the journal entries that were in the prompt.

Deliberately keyword/regex based: it must be deterministic and run in
microseconds over any number of claims without another LLM call.

Pipeline:
    1. Candidate sentences: text up to a terminator that addresses the
       athlete ("you"/"your"), longer than 10 characters.
    2. Ordered claim matchers, first match wins (injury and emotion are
       checked before the generic event/progress shapes).
    3. Optional weekday reference -> most recent entry on that weekday.
    4. Every entry field is scored; the best entry is the claim's evidence.
    5. Best score < 0.3 -> unsupported, confidence 0, no receipt.
    6. Near-duplicate claims (Jaccard > 0.8) collapse to the more confident one.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import logging

from models import ClaimType
from services.journal_store import JournalEntryData

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Thresholds and weights
# ---------------------------------------------------------------------------

SUPPORT_THRESHOLD = 0.3
DUPLICATE_SIMILARITY = 0.8
MIN_SENTENCE_LENGTH = 10
SNIPPET_PADDING = 30
FALLBACK_SNIPPET_LENGTH = 100

KEY_TERM_WEIGHT = 0.5
SIMILARITY_WEIGHT = 0.2
WEEKDAY_BONUS = 0.15


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

STOP_WORDS = frozenset({
    "you", "your", "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "was", "were", "is", "are", "been", "being", "have",
    "has", "had", "do", "does", "did", "will", "would", "could", "should", "may",
    "might", "must", "shall", "that", "this", "these", "those", "it", "its",
})

POSITIVE_EMOTION_KEYWORDS = (
    "confident", "motivated", "energized", "focused", "positive", "happy", "excited",
    "calm", "relaxed", "strong", "powerful", "determined", "optimistic", "proud",
    "accomplished", "satisfied", "hopeful", "enthusiastic", "inspired", "improved",
    "better", "good", "great", "excellent", "amazing", "fantastic",
)

NEGATIVE_EMOTION_KEYWORDS = (
    "anxious", "stressed", "tired", "exhausted", "frustrated", "sad", "nervous",
    "worried", "distracted", "negative", "weak", "unmotivated", "discouraged",
    "overwhelmed", "drained", "defeated", "disappointed", "afraid", "uncertain",
    "worse", "bad", "terrible", "struggling", "difficult",
)

SKIPPED_KEYWORDS = (
    "skipped", "missed", "didn't", "did not", "couldn't", "could not", "rest day",
    "took off", "day off", "rested", "no training", "no practice", "no workout",
)

INJURY_TERMS = (
    "shin splint", "pain", "injury", "sore", "strain", "ache", "hurt", "sprain",
    "cramp", "stiff", "fatigue",
)

BARRIER_TERMS = (
    "struggle", "difficult", "challenge", "obstacle", "barrier", "block", "issue",
    "problem", "hard",
)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_SENTENCE_RE = re.compile(r"[^.!?\n]*\b(?:you|your)\b[^.!?\n]*[.!?]", re.IGNORECASE)
_WEEKDAY_RE = re.compile(r"\b(" + "|".join(WEEKDAYS) + r")\b", re.IGNORECASE)
_WORD_SPLIT_RE = re.compile(r"\W+")


# ---------------------------------------------------------------------------
# Type-specific scorers: (claim_lower, entry_lower) -> bonus
# ---------------------------------------------------------------------------

def _emotion_bonus(claim: str, entry: str) -> float:
    """Sentiment direction must agree; more matching keywords, more bonus."""
    claim_positive = any(k in claim for k in POSITIVE_EMOTION_KEYWORDS)
    claim_negative = any(k in claim for k in NEGATIVE_EMOTION_KEYWORDS)
    entry_positive = sum(1 for k in POSITIVE_EMOTION_KEYWORDS if k in entry)
    entry_negative = sum(1 for k in NEGATIVE_EMOTION_KEYWORDS if k in entry)

    score = 0.0
    if claim_positive and entry_positive > entry_negative:
        score = 0.3 + entry_positive * 0.05
    elif claim_negative and entry_negative > entry_positive:
        score = 0.3 + entry_negative * 0.05
    return min(0.5, score)


def _skipped_bonus(claim: str, entry: str) -> float:
    matched = sum(1 for k in SKIPPED_KEYWORDS if k in entry)
    return min(0.5, matched * 0.15)


def _injury_bonus(claim: str, entry: str) -> float:
    matched = sum(1 for t in INJURY_TERMS if t in claim and t in entry)
    return min(0.5, matched * 0.2)


def _barrier_bonus(claim: str, entry: str) -> float:
    matched = sum(1 for t in BARRIER_TERMS if t in claim and t in entry)
    return min(0.4, matched * 0.15)


def _no_bonus(claim: str, entry: str) -> float:
    return 0.0


@dataclass(frozen=True)
class ClaimMatcher:
    """Tagged matcher: a claim kind, the sentence shape, and its scoring bonus."""
    kind: ClaimType
    pattern: "re.Pattern[str]"
    scorer: Callable[[str, str], float]


# Priority order is significant: the first matching shape decides the kind.
CLAIM_MATCHERS: Tuple[ClaimMatcher, ...] = (
    # "you reported shin splints", "you mentioned pain", "you had an injury"
    ClaimMatcher(ClaimType.INJURY, re.compile(
        r"(?:you\s+)?(?:reported|mentioned|noted|had|experienced|described|said\s+about)\s+"
        r"(?:having\s+)?(?:an?\s+)?"
        r"([a-z\s]*(?:shin splints?|pain|injury|soreness|strain|ache|hurt|sprain|cramp|stiffness|fatigue|tiredness|exhaustion))",
        re.IGNORECASE), _injury_bonus),
    # "your confidence improved", "your mood was"
    ClaimMatcher(ClaimType.EMOTION, re.compile(
        r"(?:your\s+)?(?:confidence|mood|motivation|energy|anxiety|stress|focus|mindset|attitude|mental\s+state)\s+"
        r"(?:was|improved|decreased|increased|dropped|grew|felt|seemed|appeared|became)"
        r"(?:\s+(?:better|worse|stronger|weaker|higher|lower|more|less))?",
        re.IGNORECASE), _emotion_bonus),
    # "you felt confident", "you seemed anxious"
    ClaimMatcher(ClaimType.EMOTION, re.compile(
        r"you\s+(?:felt|were|seemed|appeared|reported\s+feeling|mentioned\s+feeling)\s+(?:more\s+|less\s+)?"
        r"(?:confident|anxious|stressed|motivated|energized|tired|exhausted|focused|distracted|positive|"
        r"negative|happy|sad|frustrated|excited|nervous|calm|relaxed)",
        re.IGNORECASE), _emotion_bonus),
    # "you skipped", "you didn't train", "you took a day off"
    ClaimMatcher(ClaimType.SKIPPED, re.compile(
        r"you\s+(?:skipped|missed|didn't\s+(?:train|practice|workout|exercise|show\s+up)|"
        r"took\s+(?:a\s+)?(?:day|time)\s+off|rested|had\s+a\s+rest\s+day)",
        re.IGNORECASE), _skipped_bonus),
    # "you completed", "you worked on"
    ClaimMatcher(ClaimType.EVENT, re.compile(
        r"you\s+(?:completed|achieved|accomplished|did|performed|finished|started|began|tried|attempted|"
        r"worked\s+on|focused\s+on|practiced)\s+(?:your\s+)?([a-z\s]+)",
        re.IGNORECASE), _no_bonus),
    # "you struggled with", "your main barrier was"
    ClaimMatcher(ClaimType.BARRIER, re.compile(
        r"(?:you\s+)?(?:struggled\s+with|faced|encountered|dealt\s+with|had\s+(?:difficulty|trouble|issues?)\s+with|"
        r"your\s+(?:main\s+)?barrier\s+(?:was|is))\s+([a-z\s]+)",
        re.IGNORECASE), _barrier_bonus),
    # "you made progress", "you improved"
    ClaimMatcher(ClaimType.PROGRESS, re.compile(
        r"you\s+(?:made\s+progress|improved|got\s+better|advanced|developed|grew|showed\s+improvement)"
        r"\s*(?:in|on|with|at)?\s*([a-z\s]*)",
        re.IGNORECASE), _no_bonus),
)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ExtractedClaim:
    """One claim plus its best evidence (if any)."""
    claim_text: str
    claim_type: ClaimType
    is_supported: bool = False
    confidence: float = 0.0
    referenced_date: Optional[datetime] = None

    matched_entry_id: Optional[int] = None
    matched_entry_date: Optional[datetime] = None
    matched_snippet: str = ""

    @property
    def has_receipt(self) -> bool:
        return self.is_supported and self.matched_entry_id is not None and bool(self.matched_snippet)


@dataclass
class _EvidenceMatch:
    entry: Optional[JournalEntryData] = None
    field_text: str = ""
    snippet: str = ""
    score: float = 0.0


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def _words(text: str) -> set:
    return {w for w in _WORD_SPLIT_RE.split(text.lower()) if len(w) > 2}


def jaccard_similarity(text1: str, text2: str) -> float:
    """Word-set Jaccard similarity (words longer than 2 chars)."""
    words1 = _words(text1)
    words2 = _words(text2)
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def extract_key_terms(text: str) -> List[str]:
    """Distinct non-stopword terms, in first-seen order."""
    terms = (w for w in _WORD_SPLIT_RE.split(text.lower()) if len(w) > 2 and w not in STOP_WORDS)
    return list(dict.fromkeys(terms))


def extract_claim_sentences(text: str) -> List[str]:
    sentences = []
    for match in _SENTENCE_RE.finditer(text):
        sentence = match.group(0).strip()
        if len(sentence) > MIN_SENTENCE_LENGTH:
            sentences.append(sentence)
    return sentences


def _weekday_index(text: str) -> Optional[int]:
    match = _WEEKDAY_RE.search(text)
    if not match:
        return None
    return WEEKDAYS.index(match.group(1).lower())


def _truncate(text: str, max_length: int = FALLBACK_SNIPPET_LENGTH) -> str:
    return text if len(text) <= max_length else text[:max_length]


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

class ClaimVerifier:
    """
    Extract claims from a summary and verify them against journal entries.

    Usage:
        verifier = ClaimVerifier()
        claims = verifier.extract_and_verify(summary_text, entries)
        supported = [c for c in claims if c.is_supported]
    """

    def __init__(self, matchers: Sequence[ClaimMatcher] = CLAIM_MATCHERS):
        self.matchers = tuple(matchers)

    def extract_and_verify(
        self,
        summary_text: str,
        journal_entries: Iterable[JournalEntryData],
    ) -> List[ExtractedClaim]:
        if not summary_text or not summary_text.strip():
            logger.warning("Empty summary text provided to claim verifier")
            return []

        entries = list(journal_entries)
        logger.info(
            f"Extracting claims from summary ({len(summary_text)} chars) "
            f"against {len(entries)} journal entries"
        )

        claims: List[ExtractedClaim] = []
        for sentence in extract_claim_sentences(summary_text):
            claim = self._analyze_sentence(sentence, entries)
            if claim is not None:
                claims.append(claim)

        claims = self.deduplicate(claims)

        supported = sum(1 for c in claims if c.is_supported)
        logger.info(
            f"Extracted {len(claims)} claims ({supported} supported, {len(claims) - supported} unsupported)"
        )
        return claims

    def classify(self, sentence: str) -> Optional[ClaimMatcher]:
        for matcher in self.matchers:
            if matcher.pattern.search(sentence):
                return matcher
        return None

    def _analyze_sentence(
        self, sentence: str, entries: List[JournalEntryData]
    ) -> Optional[ExtractedClaim]:
        matcher = self.classify(sentence)
        if matcher is None:
            return None

        claim = ExtractedClaim(
            claim_text=sentence,
            claim_type=matcher.kind,
            referenced_date=self.resolve_referenced_date(sentence, entries),
        )

        best = self.find_best_evidence(sentence, matcher, entries)
        if best.entry is None or best.score < SUPPORT_THRESHOLD:
            return claim

        claim.is_supported = True
        claim.confidence = best.score
        claim.matched_entry_id = best.entry.id
        claim.matched_entry_date = best.entry.entry_date
        claim.matched_snippet = best.snippet or _truncate(best.field_text.strip())
        return claim

    @staticmethod
    def resolve_referenced_date(
        sentence: str, entries: List[JournalEntryData]
    ) -> Optional[datetime]:
        """Most recent entry date falling on the weekday the sentence names."""
        weekday = _weekday_index(sentence)
        if weekday is None or not entries:
            return None
        candidates = [e.entry_date for e in entries if e.entry_date.weekday() == weekday]
        return max(candidates) if candidates else None

    def find_best_evidence(
        self,
        claim: str,
        matcher: ClaimMatcher,
        entries: List[JournalEntryData],
    ) -> _EvidenceMatch:
        claim_lower = claim.lower()
        key_terms = extract_key_terms(claim)
        claim_weekday = _weekday_index(claim_lower)

        best = _EvidenceMatch()
        for entry in entries:
            for field_text in (entry.emotional_state, entry.session_reflection, entry.mental_barriers):
                if not field_text or not field_text.strip():
                    continue
                score, snippet = self.score_field(
                    claim_lower, matcher, key_terms, field_text, entry.entry_date, claim_weekday
                )
                if score > best.score:
                    best = _EvidenceMatch(entry=entry, field_text=field_text, snippet=snippet, score=score)
        return best

    @staticmethod
    def score_field(
        claim_lower: str,
        matcher: ClaimMatcher,
        key_terms: List[str],
        field_text: str,
        entry_date: datetime,
        claim_weekday: Optional[int],
    ) -> Tuple[float, str]:
        """Composite score of one entry field against a claim, plus the snippet."""
        field_lower = field_text.lower()
        score = 0.0
        snippet = ""

        # 1. Key terms found verbatim, with the widest snippet around a hit
        matched_terms = 0
        for term in key_terms:
            index = field_lower.find(term)
            if index < 0:
                continue
            matched_terms += 1
            start = max(0, index - SNIPPET_PADDING)
            end = min(len(field_text), index + len(term) + SNIPPET_PADDING)
            candidate = field_text[start:end].strip()
            if len(candidate) > len(snippet):
                snippet = candidate
        if key_terms:
            score += matched_terms / len(key_terms) * KEY_TERM_WEIGHT

        # 2. Claim-type bonus
        score += matcher.scorer(claim_lower, field_lower)

        # 3. Whole-text similarity
        score += jaccard_similarity(claim_lower, field_lower) * SIMILARITY_WEIGHT

        # 4. Weekday agreement
        if claim_weekday is not None and entry_date.weekday() == claim_weekday:
            score += WEEKDAY_BONUS

        return min(1.0, max(0.0, score)), snippet

    @staticmethod
    def deduplicate(claims: List[ExtractedClaim]) -> List[ExtractedClaim]:
        """Collapse near-identical claims, keeping the higher-confidence one."""
        unique: List[ExtractedClaim] = []
        for claim in claims:
            duplicate_index = next(
                (
                    i for i, existing in enumerate(unique)
                    if jaccard_similarity(existing.claim_text, claim.claim_text) > DUPLICATE_SIMILARITY
                ),
                None,
            )
            if duplicate_index is None:
                unique.append(claim)
            elif claim.confidence > unique[duplicate_index].confidence:
                unique[duplicate_index] = claim
        return unique


def extract_and_verify(
    summary_text: str, journal_entries: Iterable[JournalEntryData]
) -> List[ExtractedClaim]:
    """Module-level convenience over a default ClaimVerifier."""
    return ClaimVerifier().extract_and_verify(summary_text, journal_entries)
