"""Function-call bookkeeping shared by all decoders.

Guarantees per call id: ``FunctionCallStart`` first, argument deltas in
fragment order, ``FunctionCallDone`` last. Only byte counts are kept, so a
call's memory cost does not grow with its arguments.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from castor.errors import ProtocolError, ResponseTooLarge
from castor.events import FunctionCallArgumentDelta, FunctionCallDone, FunctionCallStart

if TYPE_CHECKING:
    from castor.events import StreamEvent

DEFAULT_MAX_ARGUMENT_BYTES = 1024 * 1024


@dataclass
class _OpenCall:
    name: str
    arg_bytes: int = 0
    thought_signature: str | None = None


class CallTracker:
    def __init__(self, *, max_argument_bytes: int = DEFAULT_MAX_ARGUMENT_BYTES) -> None:
        self.max_argument_bytes = max_argument_bytes
        self._open: dict[str, _OpenCall] = {}
        self._finished: set[str] = set()

    def start(self, call_id: str, name: str) -> list[StreamEvent]:
        if call_id in self._open or call_id in self._finished:
            raise ProtocolError(f"duplicate function call id: {call_id!r}")
        self._open[call_id] = _OpenCall(name=name)
        return [FunctionCallStart(call_id=call_id, name=name)]

    def fragment(self, call_id: str, fragment: str) -> list[StreamEvent]:
        call = self._open.get(call_id)
        if call is None:
            raise ProtocolError(f"argument fragment for unknown call: {call_id!r}")
        if not fragment:
            return []
        call.arg_bytes += len(fragment.encode("utf-8"))
        if call.arg_bytes > self.max_argument_bytes:
            self.discard()
            raise ResponseTooLarge(
                f"arguments for call {call_id!r} exceed {self.max_argument_bytes} bytes",
                limit=self.max_argument_bytes,
            )
        return [FunctionCallArgumentDelta(call_id=call_id, fragment=fragment)]

    def sign(self, call_id: str, thought_signature: str) -> None:
        call = self._open.get(call_id)
        if call is not None:
            call.thought_signature = thought_signature

    def done(self, call_id: str, thought_signature: str | None = None) -> list[StreamEvent]:
        call = self._open.pop(call_id, None)
        if call is None:
            raise ProtocolError(f"completion for unknown call: {call_id!r}")
        self._finished.add(call_id)
        signature = thought_signature if thought_signature is not None else call.thought_signature
        return [FunctionCallDone(call_id=call_id, thought_signature=signature)]

    def done_all(self) -> list[StreamEvent]:
        """Close every open call in start order."""
        events: list[StreamEvent] = []
        for call_id in list(self._open):
            events.extend(self.done(call_id))
        return events

    def is_open(self, call_id: str) -> bool:
        return call_id in self._open

    @property
    def open_ids(self) -> tuple[str, ...]:
        return tuple(self._open)

    def discard(self) -> None:
        """Forget every unfinished call."""
        self._open.clear()


def extract_vendor_signature(call: dict[str, Any]) -> str | None:
    """Return ``extra_content.<vendor>.thought_signature`` from a call object."""
    extra = call.get("extra_content")
    if not isinstance(extra, dict):
        return None
    for vendor_data in extra.values():
        if isinstance(vendor_data, dict):
            signature = vendor_data.get("thought_signature")
            if isinstance(signature, str) and signature:
                return signature
    return None
