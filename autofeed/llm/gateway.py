"""Completion gateway - the single boundary to the external completion service.

``complete`` is blocking. The request timeout scales with prompt size (30s,
or 120s for prompts over 50,000 characters) unless given explicitly; a
timeout or dropped connection is retried once, then surfaces as a typed
error. Callers own parsing and validation of the returned text;
``parse_structured`` does the common part.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from autofeed.config import (
    LLM_LONG_PROMPT_CHARS,
    LLM_LONG_TIMEOUT_SECONDS,
    LLM_MAX_ATTEMPTS,
    LLM_TIMEOUT_SECONDS,
)
from autofeed.infrastructure.settings import GEMINI_MAX_TOKENS, GEMINI_MODEL, GEMINI_TEMPERATURE
from autofeed.llm.gemini import GeminiInitializationError, get_gemini_model
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter, time_block

logger = get_logger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

# Signature of complete(); pipeline components accept one for injection
CompleteFn = Callable[..., str]

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class CompletionError(RuntimeError):
    """Base class for completion-service failures."""


class CompletionNotConfiguredError(CompletionError):
    """No backend credentials or SDK available."""


class CompletionTimeoutError(CompletionError):
    """The request timed out, including the retry."""


class CompletionAPIError(CompletionError):
    """The service returned an error or an empty response."""


class CompletionSchemaError(CompletionError):
    """The response was not JSON matching the requested schema."""


def resolve_timeout(prompt: str, timeout: float | None = None) -> float:
    if timeout is not None:
        return timeout
    if len(prompt) > LLM_LONG_PROMPT_CHARS:
        return LLM_LONG_TIMEOUT_SECONDS
    return LLM_TIMEOUT_SECONDS


def _generate(
    model_name: str, prompt: str, generation_config: dict[str, Any], timeout: float
) -> str:
    from google.api_core.exceptions import (
        DeadlineExceeded,
        InternalServerError,
        ResourceExhausted,
        ServiceUnavailable,
    )

    model = get_gemini_model(model_name)
    try:
        response = model.generate_content(
            prompt,
            generation_config=generation_config,
            request_options={"timeout": timeout},
        )
    except DeadlineExceeded as e:
        counter("completion.timeout")
        logger.warning("Completion call timed out after %.0fs (model=%s)", timeout, model_name)
        raise TimeoutError(f"Completion timed out after {timeout}s: {e}") from e
    except (ServiceUnavailable, InternalServerError) as e:
        counter("completion.service_unavailable")
        raise ConnectionError(f"Completion service unavailable: {e}") from e
    except ResourceExhausted as e:
        counter("completion.rate_limited")
        raise CompletionAPIError(f"Completion service rate limited: {e}") from e

    try:
        text = response.text
    except ValueError as e:
        # Raised by the SDK when the candidate was blocked or is empty
        raise CompletionAPIError(f"No content in completion response: {e}") from e
    if not text:
        raise CompletionAPIError("No content in completion response")
    return text


@retry(
    stop=stop_after_attempt(LLM_MAX_ATTEMPTS),
    wait=wait_fixed(1),
    retry=retry_if_exception_type((TimeoutError, ConnectionError)),
    reraise=True,
)
def _call_with_retry(
    model_name: str, prompt: str, generation_config: dict[str, Any], timeout: float
) -> str:
    # The SDK enforces the per-attempt deadline
    return _generate(model_name, prompt, generation_config, timeout)


def complete(
    prompt: str,
    model: str | None = None,
    response_format: dict[str, Any] | None = None,
    timeout: float | None = None,
    temperature: float | None = None,
) -> str:
    """
    Send ``prompt`` to the completion service and return the raw text.

    Args:
        prompt: Full prompt text
        model: Model name (defaults to GEMINI_MODEL)
        response_format: JSON schema the response must follow; requests JSON output
        timeout: Seconds per attempt; derived from prompt size when omitted
        temperature: Sampling temperature (defaults to GEMINI_TEMPERATURE)

    Raises:
        CompletionNotConfiguredError: No backend configured
        CompletionTimeoutError: Timed out twice
        CompletionAPIError: Any other service failure
    """
    model_name = model or GEMINI_MODEL
    request_timeout = resolve_timeout(prompt, timeout)

    generation_config: dict[str, Any] = {
        "temperature": GEMINI_TEMPERATURE if temperature is None else temperature,
        "max_output_tokens": GEMINI_MAX_TOKENS,
    }
    # Schema travels in the prompt; callers validate the reply
    if response_format is not None:
        generation_config["response_mime_type"] = "application/json"
        prompt = (
            f"{prompt}\n\nRespond with a single JSON object matching this JSON schema:\n"
            f"{json.dumps(response_format, indent=2)}"
        )

    logger.info("Calling completion model=%s prompt_length=%d", model_name, len(prompt))
    counter("completion.calls")

    try:
        with time_block("completion.latency"):
            text = _call_with_retry(model_name, prompt, generation_config, request_timeout)
    except GeminiInitializationError as e:
        counter("completion.not_configured")
        raise CompletionNotConfiguredError(str(e)) from e
    except TimeoutError as e:
        logger.error("Completion timed out after %d attempts: %s", LLM_MAX_ATTEMPTS, e)
        raise CompletionTimeoutError(str(e)) from e
    except CompletionError:
        raise
    except Exception as e:
        counter("completion.api_error")
        logger.error("Completion API error: %s - %s", type(e).__name__, e)
        raise CompletionAPIError(f"Completion failed: {e}") from e

    logger.info("Received completion response (length=%d)", len(text))
    return text


def parse_structured(text: str, schema: type[SchemaT]) -> SchemaT:
    """
    Parse a JSON completion response into ``schema``.

    Strips markdown code fences and surrounding prose before parsing.

    Raises:
        CompletionSchemaError: Not JSON, or JSON that fails validation
    """
    cleaned = _CODE_FENCE.sub("", text.strip()).strip()
    if not cleaned.startswith("{"):
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise CompletionSchemaError("Completion response contains no JSON object")
        cleaned = cleaned[start : end + 1]

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise CompletionSchemaError(f"Completion response is not valid JSON: {e}") from e

    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise CompletionSchemaError(
            f"Completion response does not match {schema.__name__}: {e.error_count()} error(s)"
        ) from e
