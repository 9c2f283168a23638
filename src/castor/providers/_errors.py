"""Map HTTP and transport failures into the castor error taxonomy.

Errors carry retry metadata so orchestrators can apply bounded, deterministic
retries without brittle substring matching. Nothing here retries.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import TYPE_CHECKING, Any

import httpx

from castor._http import ERROR_BODY_PREVIEW_CHARS, RETRYABLE_STATUS_CODES
from castor.errors import (
    RateLimitError,
    TransportError,
    UpstreamError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Mapping


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def _extract_retry_info_seconds(details: Any) -> float | None:
    """Extract retry delay from a Google API-style RetryInfo error body.

    Shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}

    The ``retryDelay`` value is a protobuf Duration string (e.g. ``"8s"``,
    ``"8.352104981s"``).
    """
    if not isinstance(details, dict):
        return None
    error: Any = details.get("error")
    if not isinstance(error, dict):
        return None
    detail_list: Any = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def extract_retry_after_s(
    headers: Mapping[str, str] | None, body: Any = None
) -> float | None:
    """Return a retry delay from a ``Retry-After`` header or a RetryInfo body."""
    if headers is not None:
        raw = headers.get("Retry-After") or headers.get("retry-after")
        if isinstance(raw, str) and raw.strip():
            try:
                seconds = float(raw)
            except ValueError:
                seconds = None
            if seconds is not None and seconds >= 0:
                return seconds
    # Fallback: Google API-style RetryInfo in error details.
    return _extract_retry_info_seconds(body)


def _auth_hint(
    provider: str, status_code: int | None, message: str, env_key: str | None
) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    lowered = message.lower()
    if status_code in {401, 403} or (
        status_code == 400 and ("api key" in lowered or "api_key" in lowered)
    ):
        target = env_key or "the provider API key"
        return f"Check credentials/permissions for {provider} (try setting {target})."
    return None


def _error_message_from_body(body: Any, text: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            msg = error.get("message")
            if isinstance(msg, str) and msg:
                return msg
        elif isinstance(error, str) and error:
            return error
        msg = body.get("message")
        if isinstance(msg, str) and msg:
            return msg
    return text[:ERROR_BODY_PREVIEW_CHARS]


def _parse_json_or_none(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def classify_status(
    status_code: int,
    *,
    body_text: str,
    headers: Mapping[str, str] | None,
    provider: str,
    phase: str = "stream",
    env_key: str | None = None,
) -> UpstreamError:
    """Build an UpstreamError for a non-2xx response.

    429 and 5xx (plus 408/409) are retryable; other 4xx are not.
    """
    body = _parse_json_or_none(body_text) if body_text else None
    detail = _error_message_from_body(body, body_text)
    retry_after_s = extract_retry_after_s(headers, body)

    err_cls: type[UpstreamError] = RateLimitError if status_code == 429 else UpstreamError
    retryable = is_retryable_status(status_code)
    msg = f"{provider} {phase} failed (status={status_code})"
    return err_cls(
        f"{msg}: {detail}" if detail else msg,
        hint=_auth_hint(provider, status_code, detail, env_key),
        retryable=retryable,
        status_code=status_code,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
    )


def upstream_error_from_payload(
    payload: Mapping[str, Any], *, provider: str | None = None
) -> UpstreamError:
    """Build an UpstreamError from an in-band ``error`` object in a stream."""
    error: Any = payload.get("error", payload)
    status_code: int | None = None
    message = "provider reported an error"
    code: Any = None
    if isinstance(error, dict):
        raw_msg = error.get("message")
        if isinstance(raw_msg, str) and raw_msg:
            message = raw_msg
        code = error.get("code")
        if isinstance(code, int) and 100 <= code <= 599:
            status_code = code
    elif isinstance(error, str) and error:
        message = error

    retryable = is_retryable_status(status_code) if status_code else None
    if code in {"rate_limit_exceeded", "server_error", "server_is_overloaded"}:
        retryable = True
    err_cls: type[UpstreamError] = UpstreamError
    if status_code == 429 or code == "rate_limit_exceeded":
        err_cls = RateLimitError
    return err_cls(
        message,
        retryable=retryable,
        status_code=status_code,
        retry_after_s=_extract_retry_info_seconds(payload),
        provider=provider,
        phase="stream",
    )


def wrap_transport_error(
    exc: BaseException, *, provider: str, phase: str
) -> TransportError:
    """Map httpx transport exceptions into TransportError."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    if isinstance(exc, httpx.TimeoutException):
        if phase == "stream" and isinstance(exc, httpx.ReadTimeout):
            message = f"{provider}: idle timeout waiting for SSE"
        else:
            message = f"{provider} {phase} timed out"
    else:
        cause = str(exc)
        message = f"{provider} {phase} failed: {cause}" if cause else f"{provider} {phase} failed"
    return TransportError(message, retryable=True, provider=provider)
