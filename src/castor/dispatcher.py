"""Provider dispatch: one streaming HTTP request per turn.

Each wire API is one row of ``WIRE_CODECS``: a pure request builder, a
decoder factory, and the endpoint path. The dispatcher picks the row from the
provider's ``wire_api``, sends the request with httpx, and exposes the decoded
events as a :class:`TurnStream`.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from castor._http import ERROR_BODY_PREVIEW_CHARS, JSON_CONTENT_TYPE, SSE_ACCEPT
from castor.errors import CastorError, ConfigurationError, ProtocolError, ResponseTooLarge
from castor.events import Failed, TurnAccumulator
from castor.families import resolve_family
from castor.items import Prompt
from castor.providers._errors import classify_status, wrap_transport_error
from castor.providers.base import WireApi, coerce_wire_api
from castor.requests import build_chat_request, build_gemini_request, build_responses_request
from castor.requests._common import check_signature_policy
from castor.sse import (
    DEFAULT_MAX_ARGUMENT_BYTES,
    DEFAULT_MAX_EVENT_BYTES,
    ChatDecoder,
    GeminiDecoder,
    ResponsesDecoder,
    SseFramer,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
    from types import TracebackType

    from castor.events import StreamEvent
    from castor.families import ModelFamily
    from castor.items import Conversation, ConversationItem
    from castor.providers.base import ProviderConfig
    from castor.requests import SignaturePolicy
    from castor.sse import StreamDecoder
    from castor.tools import ToolSpec

logger = logging.getLogger(__name__)

FIXTURE_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True)
class StreamLimits:
    """Size caps applied while decoding one turn."""

    max_argument_bytes: int = DEFAULT_MAX_ARGUMENT_BYTES
    max_event_bytes: int = DEFAULT_MAX_EVENT_BYTES

    def __post_init__(self) -> None:
        if self.max_argument_bytes < 1:
            raise ConfigurationError(
                f"max_argument_bytes must be >= 1, got {self.max_argument_bytes}"
            )
        if self.max_event_bytes < 1:
            raise ConfigurationError(f"max_event_bytes must be >= 1, got {self.max_event_bytes}")


@dataclass(frozen=True)
class WireRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


class RequestBuilder(Protocol):
    def __call__(
        self,
        prompt: Prompt,
        family: ModelFamily,
        provider: ProviderConfig,
        *,
        signature_policy: SignaturePolicy = ...,
    ) -> dict[str, Any]: ...


@dataclass(frozen=True)
class WireCodec:
    """Builder/decoder pair plus endpoint metadata for one wire API."""

    wire_api: WireApi
    build: RequestBuilder
    decoder: Callable[..., StreamDecoder]
    path: Callable[[str, bool], str]


def _chat_path(model: str, streaming: bool) -> str:
    return "chat/completions"


def _responses_path(model: str, streaming: bool) -> str:
    return "responses"


def _gemini_path(model: str, streaming: bool) -> str:
    name = model.removeprefix("models/")
    if streaming:
        return f"models/{name}:streamGenerateContent?alt=sse"
    return f"models/{name}:generateContent"


WIRE_CODECS: dict[WireApi, WireCodec] = {
    WireApi.CHAT_COMPLETIONS: WireCodec(
        wire_api=WireApi.CHAT_COMPLETIONS,
        build=build_chat_request,
        decoder=ChatDecoder,
        path=_chat_path,
    ),
    WireApi.RESPONSES: WireCodec(
        wire_api=WireApi.RESPONSES,
        build=build_responses_request,
        decoder=ResponsesDecoder,
        path=_responses_path,
    ),
    WireApi.GEMINI: WireCodec(
        wire_api=WireApi.GEMINI,
        build=build_gemini_request,
        decoder=GeminiDecoder,
        path=_gemini_path,
    ),
}


def codec_for(wire_api: WireApi | str) -> WireCodec:
    return WIRE_CODECS[coerce_wire_api(wire_api)]


class TurnStream:
    """Lazy, finite, non-restartable sequence of events for one turn.

    Failures after the first byte end the sequence with a single
    :class:`~castor.events.Failed` event. ``cancel()`` is checked between
    chunks and between events; ``aclose()`` also releases the connection.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        decoder: StreamDecoder,
        *,
        limits: StreamLimits,
        streaming: bool = True,
        provider: str = "fixture",
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._chunks = chunks
        self._decoder = decoder
        self._framer = SseFramer(max_event_bytes=limits.max_event_bytes)
        self._limits = limits
        self._streaming = streaming
        self._provider = provider
        self._on_close = on_close
        self._pending: deque[StreamEvent] = deque()
        self._body = bytearray()
        self._finished = False
        self._cancelled = False
        self._closed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __aiter__(self) -> TurnStream:
        return self

    async def __anext__(self) -> StreamEvent:
        while True:
            if self._cancelled:
                self._pending.clear()
                await self.aclose()
                raise StopAsyncIteration
            if self._pending:
                return self._pending.popleft()
            if self._finished:
                await self.aclose()
                raise StopAsyncIteration
            await self._pump()

    async def __aenter__(self) -> TurnStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def cancel(self) -> None:
        """Stop yielding events; unfinished function calls are discarded."""
        if self._finished and not self._pending:
            return
        self._cancelled = True
        self._decoder.discard()
        logger.debug("Turn cancelled (provider=%s)", self._provider)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._finished:
            self._cancelled = True
            self._decoder.discard()
        self._finished = True
        if self._on_close is not None:
            await self._on_close()

    async def collect(self) -> TurnAccumulator:
        """Drain the stream into a :class:`TurnAccumulator`."""
        acc = TurnAccumulator()
        async for event in self:
            acc.apply(event)
        if self._cancelled:
            acc.discard_pending()
        return acc

    async def _pump(self) -> None:
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            await self._end_of_input()
            return
        except httpx.HTTPError as e:
            await self._fail(wrap_transport_error(e, provider=self._provider, phase="stream"))
            return

        try:
            if self._streaming:
                for sse_event in self._framer.feed(chunk):
                    self._pending.extend(self._decoder.feed(sse_event))
            else:
                self._body.extend(chunk)
                if len(self._body) > self._limits.max_event_bytes:
                    raise ResponseTooLarge(
                        f"response body exceeds {self._limits.max_event_bytes} bytes",
                        limit=self._limits.max_event_bytes,
                    )
        except CastorError as e:
            await self._fail(e)

    async def _end_of_input(self) -> None:
        try:
            if self._streaming:
                self._framer.close()
                self._pending.extend(self._decoder.close())
            else:
                self._pending.extend(self._decoder.decode_body(self._parse_body()))
        except CastorError as e:
            await self._fail(e)
            return
        self._finished = True
        await self.aclose()

    def _parse_body(self) -> Any:
        try:
            return json.loads(bytes(self._body))
        except ValueError as e:
            preview = bytes(self._body[:ERROR_BODY_PREVIEW_CHARS]).decode("utf-8", "replace")
            raise ProtocolError(f"response body is not valid JSON: {preview!r}") from e
        finally:
            self._body = bytearray()

    async def _fail(self, error: CastorError) -> None:
        logger.debug("Turn failed mid-stream (provider=%s): %s", self._provider, error)
        self._decoder.discard()
        self._pending.append(Failed(error=error))
        self._finished = True
        await self.aclose()


class Dispatcher:
    """Send turns to one provider and decode the streamed replies.

    Example:
        async with Dispatcher(provider, model="gemini-2.5-pro") as dispatcher:
            turn = await dispatcher.stream(dispatcher.prompt(conversation))
            async for event in turn:
                ...
    """

    def __init__(
        self,
        provider: ProviderConfig,
        *,
        model: str,
        api_key: str | None = None,
        family: ModelFamily | None = None,
        limits: StreamLimits | None = None,
        signature_policy: SignaturePolicy = "strict",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        check_signature_policy(signature_policy)
        self.provider = provider
        self.model = model
        self.family = family or resolve_family(model)
        self.limits = limits or StreamLimits()
        self.signature_policy = signature_policy
        self.codec = codec_for(provider.wire_api)
        self._api_key = api_key
        self._client = client
        self._owns_client = client is None

    def __repr__(self) -> str:
        return (
            f"Dispatcher(provider={self.provider.name!r}, model={self.model!r}, "
            f"wire_api={self.codec.wire_api.value!r})"
        )

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def prompt(
        self,
        conversation: Conversation | Iterable[ConversationItem],
        *,
        extra_tools: Iterable[ToolSpec] = (),
    ) -> Prompt:
        """Prompt for this dispatcher's model with its family's instructions and tools."""
        return Prompt.for_family(
            conversation, self.family, model=self.model, extra_tools=extra_tools
        )

    def new_decoder(self) -> StreamDecoder:
        return self.codec.decoder(
            max_argument_bytes=self.limits.max_argument_bytes,
            provider=self.provider.name,
        )

    def build_request(self, prompt: Prompt) -> WireRequest:
        """Encode *prompt* for this provider without touching the network."""
        api_key = self.provider.resolve_api_key(self._api_key)
        body = self.codec.build(
            prompt, self.family, self.provider, signature_policy=self.signature_policy
        )
        url = self.provider.url_for(self.codec.path(prompt.model, self.provider.streaming))
        headers = {
            "Content-Type": JSON_CONTENT_TYPE,
            "Accept": SSE_ACCEPT if self.provider.streaming else JSON_CONTENT_TYPE,
            **self.provider.headers,
            **self.provider.auth_headers(api_key),
        }
        return WireRequest(url=url, headers=headers, body=body)

    async def stream(self, prompt: Prompt) -> TurnStream:
        """Open the connection for one turn.

        Raises AuthError, UpstreamError (non-2xx) or TransportError before any
        event is produced.
        """
        wire = self.build_request(prompt)
        client = self._get_client()
        request = client.build_request(
            "POST", wire.url, headers=wire.headers, json=wire.body, timeout=self._timeout()
        )
        logger.debug(
            "POST %s (provider=%s, wire_api=%s, model=%s)",
            request.url.path,
            self.provider.name,
            self.codec.wire_api.value,
            prompt.model,
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, provider=self.provider.name, phase="connect") from e

        logger.debug("%s responded %s", self.provider.name, response.status_code)
        if not response.is_success:
            try:
                body_text = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body_text = ""
            finally:
                await response.aclose()
            raise classify_status(
                response.status_code,
                body_text=body_text,
                headers=response.headers,
                provider=self.provider.name,
                phase="stream",
                env_key=self.provider.credential_env_key,
            )

        return TurnStream(
            response.aiter_bytes(),
            self.new_decoder(),
            limits=self.limits,
            streaming=self.provider.streaming,
            provider=self.provider.name,
            on_close=response.aclose,
        )

    def _timeout(self) -> httpx.Timeout:
        # The read timeout doubles as the idle timeout between SSE chunks.
        return httpx.Timeout(
            self.provider.stream_idle_timeout_s, connect=self.provider.connect_timeout_s
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout())
            self._owns_client = True
        return self._client


async def _file_chunks(path: Path, chunk_size: int) -> AsyncIterator[bytes]:
    data = path.read_bytes()
    for start in range(0, len(data), chunk_size):
        yield data[start : start + chunk_size]


def stream_from_fixture(
    path: Path | str,
    wire_api: WireApi | str,
    *,
    limits: StreamLimits | None = None,
    chunk_size: int = FIXTURE_CHUNK_BYTES,
) -> TurnStream:
    """Replay a recorded SSE file through the same framer and decoder."""
    fixture = Path(path)
    if not fixture.is_file():
        raise ConfigurationError(f"Fixture not found: {fixture}")
    if chunk_size < 1:
        raise ConfigurationError(f"chunk_size must be >= 1, got {chunk_size}")
    limits = limits or StreamLimits()
    codec = codec_for(wire_api)
    decoder = codec.decoder(max_argument_bytes=limits.max_argument_bytes)
    return TurnStream(
        _file_chunks(fixture, chunk_size),
        decoder,
        limits=limits,
        provider=f"fixture:{fixture.name}",
    )
