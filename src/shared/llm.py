"""Shared LLM calling utilities.

Centralizes provider client construction for the two supported backends
(OpenAI and Anthropic), rate-limit backoff, and LLM output parsing helpers.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from typing import TypeVar

import anthropic
import openai
from pydantic import BaseModel, ValidationError

from incurio.errors import GenerationError, GenerationExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

# Rate-limit signals from either provider SDK
RATE_LIMIT_ERRORS: tuple[type[Exception], ...] = (
    openai.RateLimitError,
    anthropic.RateLimitError,
)

TIMEOUT_ERRORS: tuple[type[Exception], ...] = (
    openai.APITimeoutError,
    anthropic.APITimeoutError,
)

PROVIDER_ERRORS: tuple[type[Exception], ...] = (
    openai.OpenAIError,
    anthropic.AnthropicError,
)

# ---------------------------------------------------------------------------
# Model name mapping (Anthropic short names)
# ---------------------------------------------------------------------------

_MODEL_MAP: dict[str, str] = {
    "sonnet": "claude-sonnet-4-6",
    "haiku": "claude-haiku-4-5-20251001",
    "opus": "claude-opus-4-6",
}


def resolve_anthropic_model(model: str) -> str:
    """Resolve a short model name to an Anthropic API model ID."""
    return _MODEL_MAP.get(model, model)


# ---------------------------------------------------------------------------
# Client factories
# ---------------------------------------------------------------------------


def make_openai_client(*, timeout: float = 60.0) -> openai.OpenAI:
    """Build an OpenAI client; credentials come from ``OPENAI_API_KEY``.

    SDK-level retries are disabled so that rate-limit handling stays in
    :func:`call_with_backoff`.
    """
    return openai.OpenAI(timeout=timeout, max_retries=0)


def make_anthropic_client(*, timeout: float = 60.0) -> anthropic.Anthropic:
    """Build an Anthropic client; credentials come from ``ANTHROPIC_API_KEY``."""
    return anthropic.Anthropic(timeout=timeout, max_retries=0)


def make_client(provider: str, *, timeout: float = 60.0) -> object:
    """Build the client for a configured generation provider."""
    if provider == "openai":
        return make_openai_client(timeout=timeout)
    if provider == "anthropic":
        return make_anthropic_client(timeout=timeout)
    raise ValueError(f"Unknown provider: {provider!r}")


# ---------------------------------------------------------------------------
# Rate-limit backoff
# ---------------------------------------------------------------------------


def retry_after_seconds(exc: BaseException) -> float | None:
    """Return the provider's retry hint in seconds, if the error carries one.

    Checks ``retry-after-ms`` first, then ``retry-after`` (seconds).
    """
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None

    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return max(float(raw_ms) / 1000.0, 0.0)
        except ValueError:
            pass

    raw_s = headers.get("retry-after")
    if raw_s:
        try:
            return max(float(raw_s), 0.0)
        except ValueError:
            pass
    return None


def call_with_backoff(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    label: str = "llm",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn``, retrying only on provider rate-limit errors.

    The delay before retry ``n`` (0-based) is ``base_delay * 2**n`` unless
    the provider supplied a retry hint, which is used instead.

    Raises:
        GenerationExhausted: ``retries`` attempts were all rate-limited.
    """
    last_exc: BaseException | None = None
    for attempt in range(retries):
        try:
            return fn()
        except RATE_LIMIT_ERRORS as exc:
            last_exc = exc
            if attempt == retries - 1:
                break
            delay = retry_after_seconds(exc)
            if delay is None:
                delay = base_delay * (2**attempt)
            logger.info(
                "Rate limited (%s). Waiting %.2fs before retry %d/%d",
                label,
                delay,
                attempt + 1,
                retries,
            )
            sleep(delay)

    raise GenerationExhausted(
        f"Rate-limit retries exhausted after {retries} attempts (label={label})"
    ) from last_exc


# ---------------------------------------------------------------------------
# Structured completions
# ---------------------------------------------------------------------------


def structured_completion(
    client: object,
    schema: type[M],
    *,
    provider: str,
    model: str,
    system_prompt: str,
    user_prompt: str,
    seed: int | None = None,
    temperature: float = 1.0,
    max_tokens: int = 1024,
    label: str = "structured",
) -> M:
    """Run one chat request and return the response parsed into ``schema``.

    ``openai`` uses native structured output; ``anthropic`` returns JSON text
    that is fence-stripped and validated against the same model.  Provider
    exceptions propagate unchanged so the caller's backoff can see them.

    Raises:
        GenerationError: The response was empty or did not match ``schema``.
    """
    if provider == "openai":
        kwargs: dict[str, object] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": schema,
            "temperature": temperature,
        }
        if seed is not None:
            kwargs["seed"] = seed
        logger.debug("Calling OpenAI model=%s (%s)", model, label)
        try:
            completion = client.chat.completions.parse(**kwargs)  # type: ignore[attr-defined]
        except ValidationError as exc:
            raise GenerationError(f"Response did not match schema (label={label})") from exc
        choices = getattr(completion, "choices", None) or []
        parsed = choices[0].message.parsed if choices else None
        if parsed is None:
            raise GenerationError(f"No parsed content received from OpenAI (label={label})")
        if isinstance(parsed, schema):
            return parsed
        try:
            return schema.model_validate(parsed)
        except ValidationError as exc:
            raise GenerationError(f"Response did not match schema (label={label})") from exc

    if provider == "anthropic":
        resolved = resolve_anthropic_model(model)
        logger.debug("Calling Anthropic API model=%s (%s)", resolved, label)
        response = client.messages.create(  # type: ignore[attr-defined]
            model=resolved,
            max_tokens=max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            temperature=temperature,
        )
        text_parts: list[str] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
        text = "".join(text_parts).strip()
        if not text:
            raise GenerationError(f"Anthropic API returned empty response (label={label})")
        try:
            return schema.model_validate_json(strip_json_fences(text))
        except ValidationError as exc:
            raise GenerationError(f"Unparseable response (label={label}): {text[:200]}") from exc

    raise ValueError(f"Unknown provider: {provider!r}")


# ---------------------------------------------------------------------------
# JSON output helpers
# ---------------------------------------------------------------------------

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


def strip_json_fences(text: str) -> str:
    """Return the JSON object inside a model reply.

    Chat models like to wrap JSON in ```json ... ``` blocks or add a line
    of prose around it.
    """
    text = text.strip()
    match = _JSON_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text
