"""
LLM Gateway

One async entry point for every provider the experiments compare:

    result = await gateway.generate(system_prompt, user_prompt, provider, model)

OpenAI, Google (Gemini), DeepSeek and Ollama all speak the OpenAI chat
completions protocol and share openai.AsyncOpenAI with a different base URL.
Anthropic goes through anthropic.AsyncAnthropic.

Clients are created lazily per provider and cached for the gateway's lifetime.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from core.config import Settings, settings as default_settings
from core.exceptions import ExperimentConfigError, LLMProviderError

logger = logging.getLogger(__name__)


SUPPORTED_PROVIDERS = ("openai", "anthropic", "google", "deepseek", "ollama")

# Providers that run locally and need no credential.
KEYLESS_PROVIDERS = frozenset({"ollama"})

DEEPSEEK_MODEL_ALIASES = {
    "chat": "deepseek-chat",
    "deepseek-chat": "deepseek-chat",
    "reasoner": "deepseek-reasoner",
    "r1": "deepseek-reasoner",
    "deepseek-reasoner": "deepseek-reasoner",
    "coder": "deepseek-coder",
    "deepseek-coder": "deepseek-coder",
}


@dataclass
class GenerationResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def normalize_provider(provider: str) -> str:
    return (provider or "").strip().lower()


def normalize_deepseek_model(model: str) -> str:
    key = model.strip().lower()
    if key in DEEPSEEK_MODEL_ALIASES:
        return DEEPSEEK_MODEL_ALIASES[key]
    if key.startswith("gpt-"):
        return "deepseek-chat"
    return model


class LLMGateway:
    """Provider-agnostic async chat completion."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._clients: Dict[str, object] = {}

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def api_key_for(self, provider: str) -> Optional[str]:
        provider = normalize_provider(provider)
        return {
            "openai": self.settings.OPENAI_API_KEY,
            "anthropic": self.settings.ANTHROPIC_API_KEY,
            "google": self.settings.GOOGLE_AI_API_KEY,
            "deepseek": self.settings.DEEPSEEK_API_KEY,
        }.get(provider)

    def is_provider_configured(self, provider: str) -> bool:
        provider = normalize_provider(provider)
        if provider not in SUPPORTED_PROVIDERS:
            return False
        if provider in KEYLESS_PROVIDERS:
            return True
        return bool(self.api_key_for(provider))

    def validate_provider(self, provider: str, model: str) -> None:
        """Raise ExperimentConfigError for an unknown or unconfigured provider."""
        normalized = normalize_provider(provider)
        if normalized not in SUPPORTED_PROVIDERS:
            raise ExperimentConfigError(
                f"Unknown AI provider: {provider}. Supported: {', '.join(SUPPORTED_PROVIDERS)}",
                field="provider",
            )
        if not model or not model.strip():
            raise ExperimentConfigError(f"Model is required for provider {provider}", field="model")
        if not self.is_provider_configured(normalized):
            raise ExperimentConfigError(
                f"Provider {normalized} is not configured (missing API key)",
                field="provider",
            )

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def _client_for(self, provider: str):
        if provider in self._clients:
            return self._clients[provider]

        timeout = self.settings.EXTERNAL_API_TIMEOUT
        if provider == "anthropic":
            client = AsyncAnthropic(api_key=self.settings.ANTHROPIC_API_KEY, timeout=timeout)
        elif provider == "openai":
            client = AsyncOpenAI(
                api_key=self.settings.OPENAI_API_KEY,
                base_url=self.settings.OPENAI_BASE_URL,
                timeout=timeout,
            )
        elif provider == "google":
            client = AsyncOpenAI(
                api_key=self.settings.GOOGLE_AI_API_KEY,
                base_url=self.settings.GOOGLE_ENDPOINT,
                timeout=timeout,
            )
        elif provider == "deepseek":
            client = AsyncOpenAI(
                api_key=self.settings.DEEPSEEK_API_KEY,
                base_url=self.settings.DEEPSEEK_ENDPOINT,
                timeout=timeout,
            )
        elif provider == "ollama":
            client = AsyncOpenAI(
                api_key="ollama",
                base_url=f"{self.settings.OLLAMA_ENDPOINT.rstrip('/')}/v1",
                timeout=timeout,
            )
        else:
            raise ExperimentConfigError(f"Unknown AI provider: {provider}", field="provider")

        logger.info(f"Created LLM client for provider: {provider}")
        self._clients[provider] = client
        return client

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        provider: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        provider = normalize_provider(provider)
        self.validate_provider(provider, model)
        max_tokens = max_tokens or self.settings.EXPERIMENT_MAX_OUTPUT_TOKENS

        client = self._client_for(provider)
        started = time.monotonic()
        try:
            if provider == "anthropic":
                result = await self._generate_anthropic(
                    client, system_prompt, user_prompt, model, temperature, max_tokens
                )
            else:
                if provider == "deepseek":
                    model = normalize_deepseek_model(model)
                result = await self._generate_openai_compatible(
                    client, system_prompt, user_prompt, model, temperature, max_tokens
                )
        except LLMProviderError:
            raise
        except Exception as e:
            logger.error(f"LLM call failed for {provider}/{model}: {e}")
            raise LLMProviderError(provider, model, str(e)) from e

        result.latency_ms = int((time.monotonic() - started) * 1000)
        if not result.text.strip():
            raise LLMProviderError(provider, model, "empty response")
        return result

    async def _generate_openai_compatible(
        self, client, system_prompt, user_prompt, model, temperature, max_tokens
    ) -> GenerationResult:
        response = await client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = (response.choices[0].message.content or "") if response.choices else ""
        usage = getattr(response, "usage", None)
        return GenerationResult(
            text=text,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )

    async def _generate_anthropic(
        self, client, system_prompt, user_prompt, model, temperature, max_tokens
    ) -> GenerationResult:
        response = await client.messages.create(
            model=model,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = getattr(response, "usage", None)
        return GenerationResult(
            text=text,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )
