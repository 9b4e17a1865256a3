"""Per-turn completion engine selection.

Order: a reachable local provider (Ollama or LM Studio), then Anthropic, GLM
and OpenAI depending on which keys are configured. The choice is made once
before generation and never changes within a turn.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from finchat.config import AppConfig
from finchat.errors import ProviderUnavailableError
from finchat.providers.anthropic_engine import AnthropicEngine
from finchat.providers.base import CompletionEngine
from finchat.providers.openai_engine import OpenAICompatibleEngine

logger = logging.getLogger(__name__)

PREFERRED_LOCAL_MODELS = [
    "deepseek-r1",
    "qwen3",
    "phi4-reasoning",
    "cogito",
    "llama3.1",
    "gemma3:4b",
    "gemma3",
    "llama3.2",
    "llama3",
    "qwen2.5",
    "codestral",
]

REASONING_MODEL_PATTERNS = [
    "deepseek-r1",
    "deepseek-v3",
    "deepseek-v3.1",
    "qwen3",
    "qwq",
    "phi4-reasoning",
    "phi-4-reasoning",
    "cogito",
]

EMBEDDING_MARKERS = ("embed", "embedding", "nomic")


@dataclass
class ProviderPreferences:
    local_enabled: bool = True
    local_provider: str = "ollama"
    preferred_model: str | None = None

    @classmethod
    def from_headers(cls, headers: Any) -> "ProviderPreferences":
        provider = (headers.get("x-local-provider") or "ollama").strip().lower()
        return cls(
            local_enabled=(headers.get("x-ollama-enabled") or "").strip().lower() != "false",
            local_provider=provider if provider in {"ollama", "lmstudio"} else "ollama",
            preferred_model=(headers.get("x-ollama-model") or "").strip() or None,
        )


@dataclass
class EngineSelection:
    provider: str
    model: str
    supports_reasoning: bool
    engine: CompletionEngine

    def describe(self) -> dict[str, Any]:
        return {"provider": self.provider, "model": self.model, "supportsReasoning": self.supports_reasoning}


def supports_reasoning(model: str) -> bool:
    name = (model or "").lower()
    return any(pattern in name for pattern in REASONING_MODEL_PATTERNS)


def choose_local_model(available: list[str], preferred: str | None = None) -> str | None:
    if not available:
        return None
    if preferred and preferred in available:
        return preferred
    for family in PREFERRED_LOCAL_MODELS:
        for name in available:
            if family in name:
                return name
    return available[0]


async def probe_local_models(
    provider: str,
    config: AppConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[str]:
    """List models served by a local provider, or [] when it is unreachable."""
    timeout_s = max(0.1, config.providers.local_probe_timeout_ms / 1000.0)
    if provider == "lmstudio":
        url = f"{config.providers.lmstudio_base_url.rstrip('/')}/v1/models"
    else:
        url = f"{config.providers.ollama_base_url.rstrip('/')}/api/tags"
    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            resp = await client.get(url)
        if resp.status_code != 200:
            return []
        data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.info("Local provider %s unreachable at %s: %s", provider, url, exc)
        return []
    if provider == "lmstudio":
        names = [str(m.get("id")) for m in data.get("data", []) if m.get("id")]
        return [n for n in names if not any(marker in n.lower() for marker in EMBEDDING_MARKERS)]
    return [str(m.get("name")) for m in data.get("models", []) if m.get("name")]


def _cloud_selection(config: AppConfig, claude_model: str | None) -> EngineSelection:
    timeout_ms = config.anthropic.request_timeout_ms
    if config.anthropic.api_key:
        model = claude_model or config.anthropic.primary_model
        return EngineSelection(
            provider="anthropic",
            model=model,
            supports_reasoning=False,
            engine=AnthropicEngine(
                api_key=config.anthropic.api_key,
                model=model,
                temperature=config.anthropic.temperature,
                timeout_ms=timeout_ms,
            ),
        )
    if config.providers.glm_api_key:
        model = config.providers.glm_model
        return EngineSelection(
            provider="glm",
            model=model,
            supports_reasoning=False,
            engine=OpenAICompatibleEngine(
                provider="glm",
                model=model,
                api_key=config.providers.glm_api_key,
                base_url=config.providers.glm_base_url,
                timeout_ms=timeout_ms,
            ),
        )
    if config.providers.openai_api_key:
        model = config.providers.openai_model
        return EngineSelection(
            provider="openai",
            model=model,
            supports_reasoning=True,
            engine=OpenAICompatibleEngine(
                provider="openai",
                model=model,
                api_key=config.providers.openai_api_key,
                timeout_ms=timeout_ms,
            ),
        )
    raise ProviderUnavailableError("No completion engine is configured. Set ANTHROPIC_API_KEY, GLM_API_KEY or OPENAI_API_KEY.")


async def select_engine(
    config: AppConfig,
    prefs: ProviderPreferences,
    *,
    claude_model: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> EngineSelection:
    if prefs.local_enabled and config.is_development:
        available = await probe_local_models(prefs.local_provider, config, transport=transport)
        model = choose_local_model(available, prefs.preferred_model)
        if model:
            base = config.providers.lmstudio_base_url if prefs.local_provider == "lmstudio" else config.providers.ollama_base_url
            selection = EngineSelection(
                provider=prefs.local_provider,
                model=model,
                supports_reasoning=supports_reasoning(model),
                engine=OpenAICompatibleEngine(
                    provider=prefs.local_provider,
                    model=model,
                    api_key="lm-studio" if prefs.local_provider == "lmstudio" else "ollama",
                    base_url=f"{base.rstrip('/')}/v1",
                    timeout_ms=config.anthropic.request_timeout_ms,
                ),
            )
            logger.info("Selected local engine provider=%s model=%s", selection.provider, selection.model)
            return selection
    selection = _cloud_selection(config, claude_model)
    logger.info("Selected cloud engine provider=%s model=%s", selection.provider, selection.model)
    return selection
