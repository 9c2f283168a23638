"""Exception hierarchy for castor."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class CastorError(Exception):
    """Base exception for all castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Provider, model family, or session configuration is invalid."""


ConfigError = ConfigurationError


class AuthError(ConfigurationError):
    """A required credential is missing.

    Raised before any network call is made.
    """


class TransportError(CastorError):
    """Connection-level failure: connect error, reset, or timeout."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool = True,
        provider: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.provider = provider


class ProtocolError(CastorError):
    """Malformed framing or an unexpected payload shape."""


class ValidationError(ProtocolError):
    """A request could not be built from the conversation.

    The most common cause is a function call replayed without the thought
    signature its model family requires.
    """


class ResponseTooLarge(CastorError):
    """A streamed value grew past its configured size cap."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        limit: int | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.limit = limit


class UpstreamError(CastorError):
    """The provider answered with an error.

    Carries retry metadata so orchestrators can apply bounded retries without
    brittle substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class RateLimitError(UpstreamError):
    """Rate limit exceeded (HTTP 429)."""


class ContextWindowExceededError(UpstreamError):
    """The model stopped because it ran out of tokens."""


class ContentFilteredError(UpstreamError):
    """The response was blocked by provider safety filters."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
