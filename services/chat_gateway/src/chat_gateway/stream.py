import json
import logging
from collections.abc import AsyncIterator

from chat_gateway.backend import StreamEvent
from chat_gateway.errors import BackendRejected, GatewayError, StreamTruncated
from chat_gateway.session_client import ConversationStream
from chat_gateway.translator import CompletionTranslator
from shared.constants import SSE_DONE
from shared.schemas import ChatCompletionChunk

logger = logging.getLogger(__name__)


def format_sse(chunk: ChatCompletionChunk) -> str:
    return f"data: {json.dumps(chunk.model_dump(), ensure_ascii=False)}\n\n"


class StreamMultiplexer:
    """Copies backend events of one conversation to the client in arrival order.

    ``prime`` pulls the first event while the HTTP status can still change;
    after that, failures only end the stream with a stop chunk and ``[DONE]``.
    The backend stream is closed whenever the consumer stops, including on
    client disconnect.
    """

    def __init__(self, stream: ConversationStream, translator: CompletionTranslator) -> None:
        self._stream = stream
        self._translator = translator
        self._events = stream.events()
        self._first: StreamEvent | None = None

    async def prime(self) -> None:
        try:
            first = await anext(self._events)
        except BaseException:
            await self._stream.aclose()
            raise
        if first.kind == StreamEvent.ERROR:
            await self._stream.aclose()
            logger.error("backend error before first chunk detail=%s", first.detail)
            raise BackendRejected(first.detail)
        self._first = first

    async def _next_event(self) -> StreamEvent | None:
        if self._first is not None:
            first, self._first = self._first, None
            return first
        try:
            return await anext(self._events)
        except StopAsyncIteration:
            return None

    async def sse(self) -> AsyncIterator[str]:
        translator = self._translator
        try:
            try:
                while True:
                    event = await self._next_event()
                    if event is None:
                        break
                    chunk = translator.translate(event)
                    if chunk is not None:
                        yield format_sse(chunk)
                    if translator.finished:
                        break
            except StreamTruncated as exc:
                logger.warning("backend stream truncated detail=%s", exc.detail)
            except GatewayError as exc:
                logger.error("backend stream failed type=%s detail=%s", exc.err_type, exc.detail)
            if not translator.finished:
                yield format_sse(translator.stop_chunk())
            yield SSE_DONE
        finally:
            await self._stream.aclose()

    async def collect(self) -> str:
        parts: list[str] = []
        try:
            while True:
                event = await self._next_event()
                if event is None:
                    break
                if event.kind == StreamEvent.MESSAGE_DELTA:
                    parts.append(event.text)
                elif event.kind == StreamEvent.ERROR:
                    logger.error("backend reported error event detail=%s", event.detail)
                    raise BackendRejected(event.detail)
                elif event.terminal:
                    break
        except StreamTruncated as exc:
            if not parts:
                raise
            logger.warning("backend stream truncated, returning partial content detail=%s", exc.detail)
        finally:
            await self._stream.aclose()
        return "".join(parts)

    async def aclose(self) -> None:
        await self._stream.aclose()
