"""
Chat-completion provider used by the relevance classifier.

Architecture:
  - ProviderConfig: per-provider settings (model, api_key, base_url, timeout)
  - Degradation chain: primary model -> fallback model -> caller's heuristic
  - Cost tracking: token counts per call, per-run token budget

Configuration via environment variables:
  LLM_PROVIDER          = openai | ollama | custom   (default: openai)
  LLM_MODEL             = gpt-4o                     (primary model)
  LLM_FALLBACK_MODEL    = gpt-4o-mini                (fallback on primary failure)
  LLM_TEMPERATURE       = 0.2
  LLM_TIMEOUT_S         = 60
  LLM_DISABLED          = false                      (force heuristic-only classification)
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1  (or custom endpoint)
  OLLAMA_BASE_URL       = http://localhost:11434/v1   (Ollama OpenAI-compat endpoint)
  OLLAMA_MODEL          = qwen2.5:7b
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Classifier output drives automated publishing; keep sampling near-deterministic.
MAX_TEMPERATURE = 0.3


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = ""
    fallback_model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.2
    max_tokens: int = 1500
    timeout_s: float = 60.0

    def __post_init__(self) -> None:
        if not self.model:
            self.model = "gpt-4o"
        self.temperature = max(0.0, min(MAX_TEMPERATURE, float(self.temperature)))


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    degraded: bool = False
    degrade_reason: str = ""


_call_usage_log: list[LLMUsage] = []


@dataclass
class RunTokenBudget:
    """Cumulative token usage for a single monitoring run.

    Once the budget is spent the classifier stops calling the model and
    answers with the keyword heuristic for the rest of the run.
    """

    run_id: str
    max_tokens_budget: int = 200000
    warn_threshold_ratio: float = 0.8

    _total_tokens: int = field(default=0, init=False)
    _warned: bool = field(default=False, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def record_usage(self, usage: LLMUsage | None) -> None:
        if usage is None:
            return
        with self._lock:
            self._total_tokens += int(usage.total_tokens)
            if (
                not self._warned
                and self.max_tokens_budget > 0
                and self._total_tokens >= int(self.max_tokens_budget * self.warn_threshold_ratio)
            ):
                self._warned = True
                logger.warning(
                    "run %s used %d of %d classifier tokens",
                    self.run_id,
                    self._total_tokens,
                    self.max_tokens_budget,
                )

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def exhausted(self) -> bool:
        if self.max_tokens_budget <= 0:
            return False
        return self._total_tokens >= self.max_tokens_budget


def get_usage_log() -> list[LLMUsage]:
    return list(_call_usage_log)


def reset_usage_log() -> None:
    _call_usage_log.clear()


def _get_provider_config(environ: Mapping[str, str] | None = None) -> ProviderConfig:
    env = os.environ if environ is None else environ
    provider = env.get("LLM_PROVIDER", "openai").strip().lower()
    fallback = env.get("LLM_FALLBACK_MODEL", "").strip()
    temperature = float(env.get("LLM_TEMPERATURE", "0.2").strip() or "0.2")
    timeout_s = float(env.get("LLM_TIMEOUT_S", "60").strip() or "60")

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=env.get("OLLAMA_MODEL", env.get("LLM_MODEL", "")).strip(),
            fallback_model=fallback,
            api_key=env.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
            base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
            temperature=temperature,
            timeout_s=timeout_s,
        )

    return ProviderConfig(
        provider=provider,
        model=env.get("LLM_MODEL", "").strip(),
        fallback_model=fallback,
        api_key=env.get("OPENAI_API_KEY", "").strip(),
        base_url=env.get("OPENAI_BASE_URL", "").strip(),
        temperature=temperature,
        timeout_s=timeout_s,
    )


def is_real_llm_available(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    if env.get("LLM_DISABLED", "false").strip().lower() in {"1", "true", "yes", "on"}:
        return False
    config = _get_provider_config(env)
    if config.provider == "ollama":
        return bool(config.base_url)
    return bool(config.api_key)


def _create_client(config: ProviderConfig):
    import openai

    kwargs: dict[str, Any] = {"timeout": config.timeout_s, "max_retries": 0}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url

    if config.provider == "ollama" and "api_key" not in kwargs:
        kwargs["api_key"] = "ollama"

    return openai.OpenAI(**kwargs)


def _call_chat(
    *,
    client,
    model: str,
    messages: list[dict[str, str]],
    temperature: float = 0.2,
    max_tokens: int = 1500,
    json_mode: bool = False,
) -> tuple[str, LLMUsage]:
    """Call chat completions and return (content, usage)."""
    t0 = time.monotonic()
    kwargs: dict[str, Any] = {
        "model": model,
        "temperature": temperature,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    response = client.chat.completions.create(**kwargs)
    elapsed_ms = (time.monotonic() - t0) * 1000

    content = response.choices[0].message.content or ""
    usage_data = response.usage
    usage = LLMUsage(
        prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
        completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
        total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
        model=model,
        latency_ms=round(elapsed_ms, 1),
    )
    _call_usage_log.append(usage)
    return content, usage


def _call_with_degradation(
    *,
    config: ProviderConfig,
    messages: list[dict[str, str]],
    json_mode: bool = False,
    max_tokens: int = 1500,
    client=None,
) -> tuple[str, LLMUsage]:
    """Try primary model, then fallback model, raising on total failure."""
    client = client or _create_client(config)

    try:
        return _call_chat(
            client=client,
            model=config.model,
            messages=messages,
            temperature=config.temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
    except Exception as primary_exc:
        if not config.fallback_model:
            raise

        logger.warning(
            "Primary model %s failed (%s), degrading to %s",
            config.model,
            type(primary_exc).__name__,
            config.fallback_model,
        )
        content, usage = _call_chat(
            client=client,
            model=config.fallback_model,
            messages=messages,
            temperature=config.temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
        usage.degraded = True
        usage.degrade_reason = f"primary_failed:{type(primary_exc).__name__}"
        return content, usage


class ChatCompletionFn:
    """Callable ``messages -> (content, usage)`` bound to one provider config."""

    def __init__(self, config: ProviderConfig | None = None) -> None:
        self.config = config or _get_provider_config()
        self._client = None

    def __call__(self, messages: list[dict[str, str]]) -> tuple[str, LLMUsage]:
        if self._client is None:
            self._client = _create_client(self.config)
        return _call_with_degradation(
            config=self.config,
            messages=messages,
            json_mode=True,
            max_tokens=self.config.max_tokens,
            client=self._client,
        )


def create_completion_fn_from_env(environ: Mapping[str, str] | None = None) -> ChatCompletionFn | None:
    """Return a completion callable, or None when no model is configured."""
    if not is_real_llm_available(environ):
        return None
    return ChatCompletionFn(_get_provider_config(environ))


def get_provider_info(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    config = _get_provider_config(environ)
    return {
        "provider": config.provider,
        "model": config.model,
        "fallback_model": config.fallback_model,
        "base_url": config.base_url or "(default)",
        "temperature": config.temperature,
        "timeout_s": config.timeout_s,
        "real_llm_available": is_real_llm_available(environ),
    }
