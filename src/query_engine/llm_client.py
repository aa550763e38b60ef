"""
LLM client abstraction -- provider-agnostic wrapper used by the model-backed
intent classifier.

Supported providers:
  mock      -- echo back the prompt (tests / offline dev; never valid JSON,
               so the classifier falls back to its rule path)
  openai    -- OpenAI Chat Completions (gpt-4o-mini default)
  anthropic -- Anthropic Messages (claude-3-haiku default)

Calls run at temperature 0 so repeated questions map to the same slots.
Configuration is read from Settings (env / .env).
"""
from __future__ import annotations

from typing import Any, Callable

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_OPENAI_DEFAULT_MODEL = "gpt-4o-mini"
_ANTHROPIC_DEFAULT_MODEL = "claude-3-haiku-20240307"
_MAX_TOKENS = 256

DEFAULT_SYSTEM_PROMPT = "You turn spending questions into JSON query slots."


def _call_mock(prompt: str, system: str) -> str:
    logger.info("LLM mock mode -- returning echo")
    return f"[MOCK] {prompt[:200]}"


def _call_openai(prompt: str, system: str) -> str:
    """Call the OpenAI Chat Completions API."""
    api_key = get_settings().openai_api_key
    if not api_key:
        raise RuntimeError(
            "openai_api_key is not set.  "
            "Set OPENAI_API_KEY in your .env file or environment."
        )

    try:
        import openai  # type: ignore[import-untyped]
    except ImportError as exc:
        raise RuntimeError(
            "The 'openai' package is not installed.  "
            "Run: pip install 'receipt-spend-query[llm]'"
        ) from exc

    client = openai.OpenAI(api_key=api_key)
    response = client.chat.completions.create(
        model=_OPENAI_DEFAULT_MODEL,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ],
        temperature=0.0,
        max_tokens=_MAX_TOKENS,
        response_format={"type": "json_object"},
    )
    text = response.choices[0].message.content or ""
    logger.info("OpenAI response (%d chars)", len(text))
    return text


def _call_anthropic(prompt: str, system: str) -> str:
    """Call the Anthropic Messages API."""
    api_key = get_settings().anthropic_api_key
    if not api_key:
        raise RuntimeError(
            "anthropic_api_key is not set.  "
            "Set ANTHROPIC_API_KEY in your .env file or environment."
        )

    try:
        import anthropic  # type: ignore[import-untyped]
    except ImportError as exc:
        raise RuntimeError(
            "The 'anthropic' package is not installed.  "
            "Run: pip install 'receipt-spend-query[llm]'"
        ) from exc

    client = anthropic.Anthropic(api_key=api_key)
    response = client.messages.create(
        model=_ANTHROPIC_DEFAULT_MODEL,
        max_tokens=_MAX_TOKENS,
        temperature=0.0,
        system=system,
        messages=[{"role": "user", "content": prompt}],
    )
    text = response.content[0].text if response.content else ""
    logger.info("Anthropic response (%d chars)", len(text))
    return text


_PROVIDERS: dict[str, Callable[[str, str], str]] = {
    "mock": _call_mock,
    "openai": _call_openai,
    "anthropic": _call_anthropic,
}


def call_llm(prompt: str, provider: str | None = None, system: str = DEFAULT_SYSTEM_PROMPT) -> str:
    """Send *prompt* to the configured (or overridden) LLM provider.

    Parameters
    ----------
    prompt : str
        The full user prompt.
    provider : str, optional
        Override the provider from settings.  One of: mock, openai, anthropic.
    system : str
        System instruction sent alongside the prompt.
    """
    if provider is None:
        provider = get_settings().llm_provider.lower()

    fn: Any = _PROVIDERS.get(provider)
    if fn is None:
        raise NotImplementedError(
            f"LLM provider '{provider}' is not supported.  "
            f"Choose from: {', '.join(_PROVIDERS)}"
        )

    logger.info("Calling LLM provider=%s  prompt_len=%d", provider, len(prompt))
    return fn(prompt, system)
