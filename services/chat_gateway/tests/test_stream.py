import asyncio
import json

import pytest

from chat_gateway.backend import StreamEvent
from chat_gateway.errors import BackendRejected, BackendTimeout, StreamTruncated
from chat_gateway.stream import StreamMultiplexer
from chat_gateway.translator import CompletionTranslator

pytestmark = pytest.mark.asyncio


class FakeStream:
    def __init__(self, events, error=None, hang=False):
        self._events = list(events)
        self._error = error
        self._hang = hang
        self.closed = False

    def events(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event
        if self._hang:
            await asyncio.sleep(3600)
        if self._error is not None:
            raise self._error

    async def aclose(self):
        self.closed = True


async def _collect_sse(multiplexer):
    return [frame async for frame in multiplexer.sse()]


def _payload(frame):
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    body = frame[len("data: "):-2]
    return body if body == "[DONE]" else json.loads(body)


async def test_chunks_follow_event_order_exactly():
    stream = FakeStream([StreamEvent.delta("Hel"), StreamEvent.delta("lo"), StreamEvent.complete()])
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))
    await multiplexer.prime()

    frames = [_payload(frame) for frame in await _collect_sse(multiplexer)]

    assert len(frames) == 4
    assert frames[0]["choices"][0]["delta"]["content"] == "Hel"
    assert frames[1]["choices"][0]["delta"]["content"] == "lo"
    assert frames[2]["choices"][0]["finish_reason"] == "stop"
    assert "content" not in frames[2]["choices"][0]["delta"]
    assert frames[3] == "[DONE]"
    assert stream.closed


async def test_done_without_complete_still_emits_stop():
    stream = FakeStream([StreamEvent.delta("Hi"), StreamEvent.done()])
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))
    await multiplexer.prime()

    frames = [_payload(frame) for frame in await _collect_sse(multiplexer)]

    assert [f if f == "[DONE]" else f["choices"][0]["finish_reason"] for f in frames] == [
        None,
        "stop",
        "[DONE]",
    ]


async def test_truncated_stream_closes_cleanly(caplog):
    stream = FakeStream([StreamEvent.delta("Hel")], error=StreamTruncated("eof"))
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))
    await multiplexer.prime()

    with caplog.at_level("WARNING"):
        frames = [_payload(frame) for frame in await _collect_sse(multiplexer)]

    assert frames[0]["choices"][0]["delta"]["content"] == "Hel"
    assert frames[1]["choices"][0]["finish_reason"] == "stop"
    assert frames[2] == "[DONE]"
    assert stream.closed
    assert any("truncated" in record.getMessage() for record in caplog.records)


async def test_failure_after_first_chunk_ends_stream():
    stream = FakeStream([StreamEvent.delta("Hel")], error=BackendTimeout("read timeout"))
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))
    await multiplexer.prime()

    frames = [_payload(frame) for frame in await _collect_sse(multiplexer)]

    assert frames[-2]["choices"][0]["finish_reason"] == "stop"
    assert frames[-1] == "[DONE]"


async def test_error_event_mid_stream_ends_with_stop():
    stream = FakeStream([StreamEvent.delta("Hel"), StreamEvent.error("quota exceeded")])
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))
    await multiplexer.prime()

    frames = await _collect_sse(multiplexer)

    assert len(frames) == 3
    assert "quota exceeded" not in "".join(frames)


async def test_prime_surfaces_error_before_first_byte():
    stream = FakeStream([StreamEvent.error("blocked")])
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))

    with pytest.raises(BackendRejected):
        await multiplexer.prime()
    assert stream.closed


async def test_prime_surfaces_empty_truncated_stream():
    stream = FakeStream([], error=StreamTruncated("eof"))
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))

    with pytest.raises(StreamTruncated):
        await multiplexer.prime()
    assert stream.closed


async def test_client_disconnect_closes_backend_stream():
    stream = FakeStream([StreamEvent.delta("Hel")], hang=True)
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))
    await multiplexer.prime()

    frames = multiplexer.sse()
    first = await anext(frames)
    assert _payload(first)["choices"][0]["delta"]["content"] == "Hel"

    await asyncio.wait_for(frames.aclose(), timeout=1.0)
    assert stream.closed


async def test_cancelled_consumer_closes_backend_stream():
    stream = FakeStream([StreamEvent.delta("Hel")], hang=True)
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))
    await multiplexer.prime()

    received = []

    async def consume():
        async for frame in multiplexer.sse():
            received.append(frame)

    task = asyncio.create_task(consume())
    while not received:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=1.0)
    assert stream.closed


async def test_collect_concatenates_content():
    stream = FakeStream(
        [StreamEvent.delta("Hel"), StreamEvent.delta("lo"), StreamEvent.complete(), StreamEvent.done()]
    )
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))

    assert await multiplexer.collect() == "Hello"
    assert stream.closed


async def test_collect_returns_partial_content_on_truncation():
    stream = FakeStream([StreamEvent.delta("Hel")], error=StreamTruncated("eof"))
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))

    assert await multiplexer.collect() == "Hel"


async def test_collect_raises_when_nothing_arrived():
    stream = FakeStream([], error=StreamTruncated("eof"))
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))

    with pytest.raises(StreamTruncated):
        await multiplexer.collect()
    assert stream.closed


async def test_collect_raises_on_error_event():
    stream = FakeStream([StreamEvent.delta("Hel"), StreamEvent.error("boom")])
    multiplexer = StreamMultiplexer(stream, CompletionTranslator("gpt-3.5-turbo"))

    with pytest.raises(BackendRejected):
        await multiplexer.collect()
