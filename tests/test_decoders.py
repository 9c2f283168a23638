"""Wire decoder tests: normalization, ordering and terminal conditions."""

from __future__ import annotations

import json

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from castor.errors import (
    ContentFilteredError,
    ContextWindowExceededError,
    ProtocolError,
    RateLimitError,
    ResponseTooLarge,
    UpstreamError,
)
from castor.events import (
    Completed,
    FunctionCallArgumentDelta,
    FunctionCallDone,
    FunctionCallStart,
    ReasoningDelta,
    ReasoningDone,
    TextDelta,
    UsageReported,
)
from castor.items import FunctionCall, Message, Reasoning
from castor.sse import ChatDecoder, GeminiDecoder, ResponsesDecoder, SseEvent, StreamDecoder
from tests.helpers import (
    accumulate,
    chat_chunk,
    chat_tool_delta,
    decode_chunks,
    gemini_chunk,
    split_at,
    sse,
    sse_body,
)

pytestmark = pytest.mark.unit


def sse_event(payload: dict) -> SseEvent:
    return SseEvent(data=json.dumps(payload))


def test_decoders_satisfy_protocol() -> None:
    for decoder in (ChatDecoder(), ResponsesDecoder(), GeminiDecoder()):
        assert isinstance(decoder, StreamDecoder)


# =============================================================================
# Chat Completions
# =============================================================================

INTERLEAVED_BODY = sse_body(
    chat_chunk(content="Running two commands. "),
    chat_chunk(
        tool_calls=[
            chat_tool_delta(0, call_id="call_a", name="shell_command", arguments='{"comm')
        ]
    ),
    chat_chunk(
        tool_calls=[chat_tool_delta(1, call_id="call_b", name="shell_command", arguments='{"c')]
    ),
    chat_chunk(tool_calls=[chat_tool_delta(0, arguments='and": "ls -la"}')]),
    chat_chunk(tool_calls=[chat_tool_delta(1, arguments='ommand": "pwd ☃"}')]),
    chat_chunk(finish_reason="tool_calls"),
    chat_chunk(usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}),
    "[DONE]",
)


def test_chat_interleaved_calls_reassemble() -> None:
    events = decode_chunks(ChatDecoder(), [INTERLEAVED_BODY])
    acc = accumulate(events)

    assert acc.items == [
        Message(role="assistant", content="Running two commands. "),
        FunctionCall(call_id="call_a", name="shell_command", arguments='{"command": "ls -la"}'),
        FunctionCall(call_id="call_b", name="shell_command", arguments='{"command": "pwd ☃"}'),
    ]
    assert acc.usage is not None
    assert acc.usage.total_tokens == 15
    assert events[-1] == Completed(response_id="chatcmpl-1", finish_reason="tool_calls")


def test_chat_per_call_event_order() -> None:
    events = decode_chunks(ChatDecoder(), [INTERLEAVED_BODY])

    for call_id in ("call_a", "call_b"):
        mine = [
            e
            for e in events
            if isinstance(e, (FunctionCallStart, FunctionCallArgumentDelta, FunctionCallDone))
            and e.call_id == call_id
        ]
        assert isinstance(mine[0], FunctionCallStart)
        assert isinstance(mine[-1], FunctionCallDone)
        assert all(isinstance(e, FunctionCallArgumentDelta) for e in mine[1:-1])


@given(st.lists(st.integers(min_value=1, max_value=len(INTERLEAVED_BODY) - 1), max_size=20))
@settings(max_examples=100, deadline=None, derandomize=True)
def test_chat_events_independent_of_chunking(cuts: list[int]) -> None:
    expected = decode_chunks(ChatDecoder(), [INTERLEAVED_BODY])
    assert decode_chunks(ChatDecoder(), split_at(INTERLEAVED_BODY, cuts)) == expected


def test_chat_fragments_before_id_and_name_are_held() -> None:
    decoder = ChatDecoder()
    events = decode_chunks(
        decoder,
        [
            sse_body(
                chat_chunk(tool_calls=[chat_tool_delta(0, arguments='{"a"')]),
                chat_chunk(tool_calls=[chat_tool_delta(0, call_id="c1")]),
                chat_chunk(tool_calls=[chat_tool_delta(0, name="noop", arguments=": 1}")]),
                chat_chunk(finish_reason="tool_calls"),
                "[DONE]",
            )
        ],
    )

    assert events[:4] == [
        FunctionCallStart(call_id="c1", name="noop"),
        FunctionCallArgumentDelta(call_id="c1", fragment='{"a"'),
        FunctionCallArgumentDelta(call_id="c1", fragment=": 1}"),
        FunctionCallDone(call_id="c1"),
    ]


def test_chat_missing_id_is_synthesized_at_finish() -> None:
    events = decode_chunks(
        ChatDecoder(),
        [
            sse_body(
                chat_chunk(tool_calls=[chat_tool_delta(0, name="noop", arguments="{}")]),
                chat_chunk(finish_reason="tool_calls"),
                "[DONE]",
            )
        ],
    )
    assert events[0] == FunctionCallStart(call_id="call_0_0", name="noop")


def test_chat_nameless_call_is_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        decode_chunks(
            ChatDecoder(),
            [
                sse_body(
                    chat_chunk(tool_calls=[chat_tool_delta(0, call_id="c1", arguments="{}")]),
                    chat_chunk(finish_reason="tool_calls"),
                )
            ],
        )


def test_chat_vendor_signature_reaches_done_event() -> None:
    delta = chat_tool_delta(0, call_id="c1", name="shell_command", arguments="{}")
    delta["extra_content"] = {"google": {"thought_signature": "sig-xyz"}}
    events = decode_chunks(
        ChatDecoder(),
        [sse_body(chat_chunk(tool_calls=[delta]), chat_chunk(finish_reason="tool_calls"))],
    )
    assert FunctionCallDone(call_id="c1", thought_signature="sig-xyz") in events


def test_chat_reasoning_and_secondary_choice() -> None:
    events = decode_chunks(
        ChatDecoder(),
        [
            sse_body(
                {"choices": [{"index": 0, "delta": {"reasoning_content": "hmm"}}]},
                chat_chunk(content="a"),
                chat_chunk(content="b", index=1),
                chat_chunk(finish_reason="stop"),
                "[DONE]",
            )
        ],
    )
    assert events[:3] == [ReasoningDelta("hmm"), TextDelta("a"), TextDelta("b", index=1)]
    assert accumulate(events).items == [
        Reasoning(content="hmm"),
        Message(role="assistant", content="a"),
    ]


def test_chat_done_completes_and_ignores_trailing_events() -> None:
    decoder = ChatDecoder()
    completed = decoder.feed(SseEvent(data="[DONE]"))
    assert completed == [Completed()]
    assert decoder.feed(sse_event(chat_chunk(content="late"))) == []
    assert decoder.close() == []


def test_chat_close_without_done_is_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        decode_chunks(ChatDecoder(), [sse(chat_chunk(content="partial"))])


def test_chat_close_after_finish_reason_completes() -> None:
    events = decode_chunks(
        ChatDecoder(), [sse_body(chat_chunk(content="ok"), chat_chunk(finish_reason="stop"))]
    )
    assert events[-1] == Completed(response_id="chatcmpl-1", finish_reason="stop")


def test_chat_argument_size_guard() -> None:
    decoder = ChatDecoder(max_argument_bytes=8)
    with pytest.raises(ResponseTooLarge) as exc:
        decode_chunks(
            decoder,
            [
                sse_body(
                    chat_chunk(tool_calls=[chat_tool_delta(0, call_id="c1", name="f")]),
                    chat_chunk(tool_calls=[chat_tool_delta(0, arguments='{"x": "')]),
                    chat_chunk(tool_calls=[chat_tool_delta(0, arguments='0123456789"}')]),
                )
            ],
        )
    assert exc.value.limit == 8


def test_chat_held_fragment_size_guard() -> None:
    with pytest.raises(ResponseTooLarge):
        decode_chunks(
            ChatDecoder(max_argument_bytes=4),
            [sse(chat_chunk(tool_calls=[chat_tool_delta(0, arguments='{"x": 1}')]))],
        )


def test_chat_error_payload_raises_upstream_error() -> None:
    payload = {"error": {"message": "slow down", "code": 429}}
    with pytest.raises(RateLimitError):
        ChatDecoder(provider="openrouter").feed(sse_event(payload))


def test_chat_malformed_json_is_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        ChatDecoder().feed(SseEvent(data="{not json"))


def test_chat_decode_body() -> None:
    body = {
        "id": "chatcmpl-9",
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": "done",
                    "tool_calls": [
                        {
                            "id": "c1",
                            "type": "function",
                            "function": {"name": "noop", "arguments": "{}"},
                        }
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3},
    }
    acc = accumulate(ChatDecoder().decode_body(body))

    assert acc.items == [
        Message(role="assistant", content="done"),
        FunctionCall(call_id="c1", name="noop", arguments="{}"),
    ]
    assert acc.completed == Completed(response_id="chatcmpl-9", finish_reason="tool_calls")


# =============================================================================
# Responses
# =============================================================================


def _resp(kind: str, **fields) -> dict:
    return {"type": kind, **fields}


RESPONSES_BODY = sse_body(
    _resp("response.created", response={"id": "resp_1", "status": "in_progress"}),
    _resp("response.output_item.added", item={"type": "reasoning", "id": "rs_1"}),
    _resp("response.reasoning_summary_text.delta", item_id="rs_1", delta="plan"),
    _resp(
        "response.output_item.done",
        item={"type": "reasoning", "id": "rs_1", "encrypted_content": "enc-1"},
    ),
    _resp("response.output_text.delta", delta="Hi"),
    _resp(
        "response.output_item.added",
        item={"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "shell"},
    ),
    _resp("response.function_call_arguments.delta", item_id="fc_1", delta='{"command":'),
    _resp("response.function_call_arguments.delta", item_id="fc_1", delta='["ls"]}'),
    _resp(
        "response.output_item.done",
        item={
            "type": "function_call",
            "id": "fc_1",
            "call_id": "call_1",
            "name": "shell",
            "arguments": '{"command":["ls"]}',
        },
    ),
    _resp(
        "response.completed",
        response={
            "id": "resp_1",
            "status": "completed",
            "usage": {
                "input_tokens": 7,
                "output_tokens": 3,
                "total_tokens": 10,
                "output_tokens_details": {"reasoning_tokens": 2},
            },
        },
    ),
)


def test_responses_stream_folds_into_items() -> None:
    events = decode_chunks(ResponsesDecoder(), [RESPONSES_BODY])
    acc = accumulate(events)

    assert acc.items == [
        Reasoning(content="plan", thought_signature="enc-1"),
        Message(role="assistant", content="Hi"),
        FunctionCall(call_id="call_1", name="shell", arguments='{"command":["ls"]}'),
    ]
    assert acc.usage is not None
    assert acc.usage.reasoning_tokens == 2
    assert events[-1] == Completed(response_id="resp_1", finish_reason="completed")


def test_responses_arguments_not_duplicated_when_streamed() -> None:
    events = decode_chunks(ResponsesDecoder(), [RESPONSES_BODY])
    fragments = [e.fragment for e in events if isinstance(e, FunctionCallArgumentDelta)]
    assert fragments == ['{"command":', '["ls"]}']


def test_responses_item_done_without_deltas_emits_arguments() -> None:
    decoder = ResponsesDecoder()
    events = decoder.feed(
        sse_event(
            _resp(
                "response.output_item.done",
                item={
                    "type": "custom_tool_call",
                    "call_id": "ct_1",
                    "name": "apply_patch",
                    "input": "*** Begin Patch",
                },
            )
        )
    )
    assert events == [
        FunctionCallStart(call_id="ct_1", name="apply_patch"),
        FunctionCallArgumentDelta(call_id="ct_1", fragment="*** Begin Patch"),
        FunctionCallDone(call_id="ct_1"),
    ]


def test_responses_vendor_signature_reaches_done_event() -> None:
    item = {
        "type": "function_call",
        "call_id": "c1",
        "name": "shell_command",
        "arguments": "{}",
        "extra_content": {"google": {"thought_signature": "sig-123"}},
    }
    events = ResponsesDecoder().feed(sse_event(_resp("response.output_item.done", item=item)))
    assert events[-1] == FunctionCallDone(call_id="c1", thought_signature="sig-123")


def test_responses_delta_for_unknown_item_is_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        ResponsesDecoder().feed(
            sse_event(_resp("response.function_call_arguments.delta", item_id="x", delta="{"))
        )


def test_responses_unknown_event_types_are_skipped() -> None:
    assert ResponsesDecoder().feed(sse_event(_resp("response.in_progress"))) == []


@pytest.mark.parametrize(
    ("reason", "error_type"),
    [
        ("max_output_tokens", ContextWindowExceededError),
        ("content_filter", ContentFilteredError),
        ("other", UpstreamError),
    ],
)
def test_responses_incomplete(reason: str, error_type: type) -> None:
    payload = _resp(
        "response.incomplete",
        response={"status": "incomplete", "incomplete_details": {"reason": reason}},
    )
    with pytest.raises(error_type) as exc:
        ResponsesDecoder().feed(sse_event(payload))
    assert exc.value.retryable is False


def test_responses_failed_context_window() -> None:
    payload = _resp(
        "response.failed",
        response={
            "status": "failed",
            "error": {"code": "context_length_exceeded", "message": "too long"},
        },
    )
    with pytest.raises(ContextWindowExceededError):
        ResponsesDecoder().feed(sse_event(payload))


def test_responses_close_before_completed_is_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        decode_chunks(ResponsesDecoder(), [sse(_resp("response.output_text.delta", delta="x"))])


def test_responses_decode_body() -> None:
    body = {
        "id": "resp_2",
        "status": "completed",
        "output": [
            {"type": "message", "content": [{"type": "output_text", "text": "hello"}]},
            {
                "type": "function_call",
                "call_id": "call_9",
                "name": "noop",
                "arguments": "{}",
            },
        ],
    }
    acc = accumulate(ResponsesDecoder().decode_body(body))
    assert acc.items == [
        Message(role="assistant", content="hello"),
        FunctionCall(call_id="call_9", name="noop", arguments="{}"),
    ]
    assert acc.completed == Completed(response_id="resp_2", finish_reason="completed")


# =============================================================================
# Gemini-native
# =============================================================================


def test_gemini_signature_reaches_function_call_done() -> None:
    body = sse_body(
        gemini_chunk({"text": "thinking", "thought": True}),
        gemini_chunk(
            {
                "functionCall": {"name": "shell_command", "args": {"command": "ls"}},
                "thoughtSignature": "sig-123",
            },
            {"functionCall": {"name": "shell_command", "args": {"command": "pwd"}}},
            finish_reason="STOP",
            usage={"promptTokenCount": 4, "candidatesTokenCount": 6, "totalTokenCount": 10},
        ),
    )
    events = decode_chunks(GeminiDecoder(), [body])
    first_id, second_id = [e.call_id for e in events if isinstance(e, FunctionCallStart)]

    assert events[0] == ReasoningDelta("thinking")
    assert first_id.startswith("gemini_call_")
    assert first_id.endswith("_1")
    assert second_id.endswith("_2")
    assert FunctionCallDone(call_id=first_id, thought_signature="sig-123") in events
    assert FunctionCallDone(call_id=second_id) in events
    usage_at = next(i for i, e in enumerate(events) if isinstance(e, UsageReported))
    assert usage_at == len(events) - 2
    assert events[-1] == Completed(finish_reason="STOP")

    acc = accumulate(events)
    first, second = acc.items[1:]
    assert first == FunctionCall(
        call_id=first_id,
        name="shell_command",
        arguments='{"command": "ls"}',
        thought_signature="sig-123",
    )
    assert second.thought_signature is None


def test_gemini_upstream_call_id_is_kept() -> None:
    events = decode_chunks(
        GeminiDecoder(),
        [sse(gemini_chunk({"functionCall": {"id": "fc-7", "name": "noop"}}))],
    )
    assert events[0] == FunctionCallStart(call_id="fc-7", name="noop")
    assert events[1] == FunctionCallArgumentDelta(call_id="fc-7", fragment="{}")


def test_gemini_synthetic_ids_differ_across_turns() -> None:
    chunk = sse(gemini_chunk({"functionCall": {"name": "shell_command"}}))
    first, second = (decode_chunks(GeminiDecoder(), [chunk]) for _ in range(2))
    assert isinstance(first[0], FunctionCallStart)
    assert isinstance(second[0], FunctionCallStart)
    assert first[0].call_id != second[0].call_id


def test_gemini_signature_stays_on_its_text_part() -> None:
    body = sse_body(
        gemini_chunk({"text": "The answer "}),
        gemini_chunk({"text": "is 4.", "thoughtSignature": "t-sig"}),
    )
    events = decode_chunks(GeminiDecoder(), [body])

    assert events[1] == TextDelta("is 4.", thought_signature="t-sig")
    assert not any(isinstance(e, ReasoningDone) for e in events)
    assert accumulate(events).items == [
        Message(role="assistant", content="The answer is 4.", thought_signature="t-sig")
    ]


def test_gemini_signature_on_empty_text_part() -> None:
    body = sse_body(
        gemini_chunk({"text": "done"}),
        gemini_chunk({"text": "", "thoughtSignature": "s"}),
    )
    events = decode_chunks(GeminiDecoder(), [body])
    expected = Message(role="assistant", content="done", thought_signature="s")
    assert accumulate(events).items == [expected]


def test_gemini_max_tokens_delivers_parts_then_fails() -> None:
    decoder = GeminiDecoder(provider="gemini")
    event = sse_event(gemini_chunk({"text": "partial"}, finish_reason="MAX_TOKENS"))

    assert decoder.feed(event) == [TextDelta("partial")]
    with pytest.raises(ContextWindowExceededError) as exc:
        decoder.close()
    assert exc.value.provider == "gemini"
    assert decoder.close() == []


def test_gemini_safety_without_parts_fails_immediately() -> None:
    with pytest.raises(ContentFilteredError):
        GeminiDecoder().feed(sse_event(gemini_chunk(finish_reason="SAFETY")))


def test_gemini_prompt_block_reason() -> None:
    with pytest.raises(ContentFilteredError):
        GeminiDecoder().feed(sse_event({"promptFeedback": {"blockReason": "OTHER"}}))


def test_gemini_error_payload() -> None:
    payload = {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}}
    with pytest.raises(UpstreamError) as exc:
        GeminiDecoder().feed(sse_event(payload))
    assert exc.value.retryable is True


def test_gemini_close_before_any_payload_is_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        GeminiDecoder().close()


def test_gemini_cut_mid_event_is_protocol_error() -> None:
    body = sse(gemini_chunk({"text": "complete"})) + b'data: {"candidates": [{"con'
    with pytest.raises(ProtocolError):
        decode_chunks(GeminiDecoder(), [body])


def test_gemini_decode_body_accepts_object_or_array() -> None:
    chunk = gemini_chunk({"text": "hi"}, finish_reason="STOP")
    single = accumulate(GeminiDecoder().decode_body(chunk))
    chunks = [gemini_chunk({"text": "h"}), gemini_chunk({"text": "i"})]
    array = accumulate(GeminiDecoder().decode_body(chunks))

    assert single.items == array.items == [Message(role="assistant", content="hi")]
