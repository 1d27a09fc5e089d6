"""
Shared test doubles for the experiment harness tests.
"""
import asyncio
import threading
from datetime import datetime
from typing import Callable, List, Optional

from core.config import Settings
from core.exceptions import LLMProviderError
from services.llm_gateway import GenerationResult, LLMGateway


ATHLETE_ID = 1
SPARSE_ATHLETE_ID = 2

DEFAULT_SUMMARY = (
    "You reported shin splints on Tuesday. "
    "You felt confident and energized on Friday. "
    "You mentioned a hamstring cramp. "
    "Keep stacking good days."
)

# Week of 2026-01-05 (Monday) .. 2026-01-11 (Sunday)
JOURNAL = [
    (datetime(2026, 1, 5, 7, 0), "Motivated and focused after a good week",
     "Tempo run felt strong, hit all my splits", "Slight worry about the upcoming race"),
    (datetime(2026, 1, 6, 7, 0), "Frustrated and worried",
     "Had to cut the interval session short because of shin splints",
     "Shin splints pain on my left leg is hard to ignore"),
    (datetime(2026, 1, 7, 7, 0), "Tired and drained",
     "Rest day, skipped training to let the shin recover", "Feeling guilty about missing a workout"),
    (datetime(2026, 1, 8, 7, 0), "Calm and relaxed",
     "Easy recovery jog, legs felt better", "Doubting whether I can race next month"),
    (datetime(2026, 1, 9, 7, 0), "Confident and energized",
     "Strides session went great, felt powerful", "None today"),
    (datetime(2026, 1, 10, 7, 0), "Anxious before the long run",
     "Long run of 18km, struggled in the last 3km", "Struggle to stay positive when fatigue sets in"),
    (datetime(2026, 1, 11, 7, 0), "Happy and proud",
     "Completed the week with a relaxed group run", "Need to work on pacing discipline"),
]


class FakeGateway(LLMGateway):
    """
    LLMGateway with scripted answers.

    responder(call_index, provider, model, system_prompt, user_prompt) returns
    the summary text (or an awaitable of it) or raises. Provider validation is
    the real one, driven by the settings passed in.
    """

    def __init__(self, settings: Settings, responder: Optional[Callable] = None,
                 input_tokens: int = 100, output_tokens: int = 50):
        super().__init__(settings=settings)
        self.responder = responder or (lambda *args: DEFAULT_SUMMARY)
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: List[dict] = []

    async def generate(self, system_prompt, user_prompt, provider, model, temperature=0.7, max_tokens=None):
        self.validate_provider(provider, model)
        index = len(self.calls)
        self.calls.append({
            "provider": provider,
            "model": model,
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
        })
        text = self.responder(index, provider, model, system_prompt, user_prompt)
        if hasattr(text, "__await__"):
            text = await text
        return GenerationResult(
            text=text,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            latency_ms=1,
        )


def failing_for(provider_name: str, fallback: Optional[Callable] = None) -> Callable:
    """Responder that raises LLMProviderError for one provider only."""
    def _respond(index, provider, model, system_prompt, user_prompt):
        if provider == provider_name:
            raise LLMProviderError(provider, model, "upstream returned 503")
        if fallback is not None:
            return fallback(index, provider, model, system_prompt, user_prompt)
        return DEFAULT_SUMMARY
    return _respond


def waiting_on(release: threading.Event, timeout: float = 5.0) -> Callable:
    """
    Responder that holds every call until release is set.

    A threading.Event, so a test can release runs living on TestClient's
    event loop thread.
    """
    async def _respond(*args):
        await asyncio.to_thread(release.wait, timeout)
        return DEFAULT_SUMMARY
    return _respond


class OverlapCounter:
    """
    Responder that records how many calls are in flight at once.

    Each call waits (up to timeout) until `expected` calls have arrived, so
    calls made one after another show up as peak == 1.
    """

    def __init__(self, expected: int, timeout: float = 2.0):
        self.expected = expected
        self.timeout = timeout
        self.active = 0
        self.peak = 0
        self._all_arrived = asyncio.Event()

    async def __call__(self, *args):
        self.active += 1
        self.peak = max(self.peak, self.active)
        if self.active >= self.expected:
            self._all_arrived.set()
        try:
            await asyncio.wait_for(self._all_arrived.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            self.active -= 1
        return DEFAULT_SUMMARY
