"""HTTP client helpers for the OpenRouter-compatible gateways.

## Centralized Model Communication

Every model call (embedding, rerank, rewrite) goes through post_json() so that
all gateways share:
- The same retry logic with exponential backoff
- The same mapping of failures onto the QueryLab error taxonomy
- Request logging for debugging

Retryable failures are rate limits (429), server errors (5xx) and transport
errors, including timeouts. A timeout that survives every retry is raised as
GatewayTimeout so callers can treat it as a retryable failure of that single
call. Everything else becomes a GatewayError subclass.

## Library Usage

Uses `requests` for HTTP calls and Pydantic v2 for structured outputs.
No client object is kept at module level: credentials and base URLs are
passed per call by the gateway that owns them.

## Data Flow

1. A gateway builds its payload and calls post_json()
2. post_json() retries transient failures, returns the decoded JSON body
3. call_structured_completion() additionally validates the assistant message
   against a Pydantic model
"""

import time
from typing import Any, Dict, List, Optional, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError as PydanticValidationError

from querylab.config import (
    BACKOFF_BASE,
    MAX_RETRIES,
    OPENROUTER_API_KEY,
    OPENROUTER_BASE_URL,
)
from querylab.errors import GatewayError, GatewayTimeout
from querylab.shared.files import setup_logging

T = TypeVar("T", bound=BaseModel)

logger = setup_logging(__name__)


class OpenRouterError(GatewayError):
    """Base exception for HTTP gateway errors."""
    pass


class RateLimitError(OpenRouterError):
    """Raised when rate limit is exceeded after all retries."""
    pass


class APIError(OpenRouterError):
    """Raised when API returns an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _error_detail(response: requests.Response) -> str:
    try:
        return response.json().get("error", {}).get("message", response.text)
    except (ValueError, AttributeError):
        return response.text


def post_json(
    url: str,
    payload: Dict[str, Any],
    api_key: Optional[str],
    timeout: float,
    max_retries: int = MAX_RETRIES,
    backoff_base: float = BACKOFF_BASE,
    label: str = "HTTP",
) -> Dict[str, Any]:
    """POST a JSON payload with retry logic and return the decoded body.

    Args:
        url: Full endpoint URL.
        payload: JSON-serializable request body.
        api_key: Bearer token. Missing keys fail fast without a request.
        timeout: Per-attempt timeout in seconds.
        max_retries: Number of retries on transient failures.
        backoff_base: Backoff multiplier for retries.
        label: Short tag for log lines and error messages (e.g., "rerank").

    Returns:
        The decoded JSON response body.

    Raises:
        GatewayTimeout: If every attempt timed out.
        RateLimitError: If rate limited after all retries.
        APIError: On non-retryable or exhausted HTTP errors, or a non-JSON body.
        OpenRouterError: On transport failures after all retries.
    """
    if not api_key:
        raise OpenRouterError(f"[{label}] API key not set in environment")

    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }

    for attempt in range(max_retries + 1):
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            if attempt < max_retries:
                delay = backoff_base ** (attempt + 1)
                logger.warning(
                    f"[{label}] Timed out after {timeout}s, "
                    f"retry {attempt + 1}/{max_retries} in {delay:.1f}s"
                )
                time.sleep(delay)
                continue
            raise GatewayTimeout(
                f"[{label}] Timed out after {max_retries} retries ({timeout}s per call)"
            ) from exc
        except requests.RequestException as exc:
            if attempt < max_retries:
                delay = backoff_base ** (attempt + 1)
                logger.warning(
                    f"[{label}] Request failed ({exc}), retry {attempt + 1}/{max_retries} in {delay:.1f}s"
                )
                time.sleep(delay)
                continue
            raise OpenRouterError(f"[{label}] Request failed after {max_retries} retries: {exc}") from exc

        if response.status_code == 200:
            try:
                return response.json()
            except ValueError as exc:
                raise APIError(f"[{label}] Response body is not JSON", 200) from exc

        # Retryable errors: rate limit or server errors
        if response.status_code >= 500 or response.status_code == 429:
            if attempt < max_retries:
                delay = backoff_base ** (attempt + 1)
                error_type = "Rate limit" if response.status_code == 429 else "Server error"
                logger.warning(
                    f"[{label}] {error_type} ({response.status_code}), "
                    f"retry {attempt + 1}/{max_retries} after {delay:.1f}s"
                )
                time.sleep(delay)
                continue
            if response.status_code == 429:
                raise RateLimitError(f"[{label}] Rate limited after {max_retries} retries")
            raise APIError(
                f"[{label}] Server error {response.status_code} after {max_retries} retries",
                response.status_code,
            )

        # Non-retryable client errors
        raise APIError(
            f"[{label}] API error {response.status_code}: {_error_detail(response)}",
            response.status_code,
        )

    raise OpenRouterError(f"[{label}] Max retries exceeded")


def _message_content(result: Dict[str, Any]) -> str:
    try:
        return result["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise APIError(f"Malformed chat completion response: {exc}") from exc


def get_openrouter_schema(model: Type[T]) -> dict:
    """Convert a Pydantic model to an OpenRouter strict response_format."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": model.__name__,
            "strict": True,
            "schema": model.model_json_schema(),
        },
    }


def call_structured_completion(
    messages: List[Dict[str, str]],
    model: str,
    response_model: Type[T],
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    temperature: float = 0.0,
    max_tokens: int = 1024,
    timeout: float = 60,
    max_retries: int = MAX_RETRIES,
    backoff_base: float = BACKOFF_BASE,
) -> T:
    """Call the chat completion API with JSON Schema enforcement.

    Sends the Pydantic model's JSON Schema in strict mode and validates the
    reply. Falls back once to json_object mode if the model rejects schema
    mode (HTTP 400 mentioning the schema) or returns JSON that fails
    validation.

    Args:
        messages: List of message dicts with 'role' and 'content' keys.
        model: OpenRouter model ID.
        response_model: Pydantic BaseModel class defining expected response.
        api_key: Override API key (defaults to OPENROUTER_API_KEY).
        base_url: Override base URL (defaults to OPENROUTER_BASE_URL).
        temperature: Sampling temperature.
        max_tokens: Maximum tokens in response.
        timeout: Request timeout in seconds.
        max_retries: Number of retries on failure.
        backoff_base: Backoff multiplier for retries.

    Returns:
        Validated instance of response_model.

    Raises:
        GatewayTimeout: If the call timed out after all retries.
        APIError: If the reply still fails validation after the fallback.
        OpenRouterError: On other API failures.

    Example:
        >>> class Result(BaseModel):
        ...     answer: str
        >>> result = call_structured_completion(
        ...     messages=[{"role": "user", "content": "Say hello"}],
        ...     model="openai/gpt-4o-mini",
        ...     response_model=Result,
        ... )
        >>> result.answer
        "Hello!"
    """
    url = f"{base_url or OPENROUTER_BASE_URL}/chat/completions"

    payload: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "response_format": get_openrouter_schema(response_model),
    }

    use_fallback = False
    while True:
        try:
            result = post_json(
                url, payload, api_key or OPENROUTER_API_KEY, timeout,
                max_retries=max_retries, backoff_base=backoff_base, label="LLM",
            )
        except APIError as exc:
            message = str(exc).lower()
            schema_rejected = "response_format" in message or "schema" in message
            if exc.status_code == 400 and schema_rejected and not use_fallback:
                logger.warning(f"JSON Schema mode not supported by {model}, falling back to json_object")
                payload["response_format"] = {"type": "json_object"}
                use_fallback = True
                continue
            raise

        content = _message_content(result)
        chars_in = sum(len(m.get("content", "")) for m in messages)
        logger.info(f"[LLM] model={model} chars_in={chars_in} chars_out={len(content)} (structured)")

        try:
            return response_model.model_validate_json(content)
        except PydanticValidationError as exc:
            if not use_fallback:
                logger.warning(f"Pydantic validation failed, trying json_object fallback: {exc}")
                payload["response_format"] = {"type": "json_object"}
                use_fallback = True
                continue
            raise APIError(f"Structured response failed validation: {exc}") from exc
