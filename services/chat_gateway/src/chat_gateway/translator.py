import logging
import time

from chat_gateway.backend import BackendTurn, StreamEvent
from chat_gateway.errors import MalformedRequest
from chat_gateway.identity import new_completion_id
from shared.constants import FINISH_REASON_STOP
from shared.schemas import (
    AssistantMessage,
    ChatCompletion,
    ChatCompletionChunk,
    ChatMessage,
    Choice,
    ChunkChoice,
    ChunkDelta,
    Usage,
)

PROMPT_MODE_FLAT = "flat"
PROMPT_MODE_TURNS = "turns"

logger = logging.getLogger(__name__)


def build_turns(messages: list[ChatMessage], mode: str = PROMPT_MODE_FLAT) -> list[BackendTurn]:
    """Map an OpenAI message list onto backend turns.

    System messages are folded in front of the first user message. In ``flat``
    mode the whole history becomes a single user turn, user turns tagged with
    ``[INST]`` once there is history; in ``turns`` mode every message is its
    own backend turn.
    """
    system_parts: list[str] = []
    dialogue: list[tuple[str, str]] = []
    for message in messages:
        text = message.text()
        if not text:
            raise MalformedRequest(message="Invalid request messages")
        if message.role == "system":
            system_parts.append(text)
        else:
            dialogue.append((message.role, text))

    if not any(role == "user" for role, _ in dialogue):
        raise MalformedRequest(message="Invalid request messages: no user message")

    if system_parts:
        first_user = next(i for i, (role, _) in enumerate(dialogue) if role == "user")
        role, text = dialogue[first_user]
        dialogue[first_user] = (role, "\n".join([*system_parts, text]))

    if mode == PROMPT_MODE_TURNS:
        return [BackendTurn(role=role, content=text) for role, text in dialogue]

    has_history = len(dialogue) > 1
    lines = [
        f"[INST]{text}[/INST]" if has_history and role == "user" else text
        for role, text in dialogue
    ]
    return [BackendTurn(role="user", content="\n".join(lines))]


class CompletionTranslator:
    """Builds OpenAI chunks and completions for one request."""

    def __init__(self, model: str, completion_id: str | None = None, created: int | None = None):
        self.model = model
        self.completion_id = completion_id or new_completion_id()
        self.created = created if created is not None else int(time.time())
        self.finished = False
        self._sent_role = False

    def _chunk(self, delta: ChunkDelta, finish_reason: str | None = None) -> ChatCompletionChunk:
        return ChatCompletionChunk(
            id=self.completion_id,
            created=self.created,
            model=self.model,
            choices=[ChunkChoice(delta=delta, finish_reason=finish_reason)],
            usage=Usage() if finish_reason else None,
        )

    def content_chunk(self, text: str) -> ChatCompletionChunk:
        delta = ChunkDelta(content=text)
        if not self._sent_role:
            delta.role = "assistant"
            self._sent_role = True
        return self._chunk(delta)

    def stop_chunk(self) -> ChatCompletionChunk:
        self.finished = True
        return self._chunk(ChunkDelta(), FINISH_REASON_STOP)

    def translate(self, event: StreamEvent) -> ChatCompletionChunk | None:
        if self.finished:
            return None
        if event.kind == StreamEvent.MESSAGE_DELTA:
            if not event.text:
                return None
            return self.content_chunk(event.text)
        if event.kind == StreamEvent.ERROR:
            logger.error("backend reported error event detail=%s", event.detail)
            return self.stop_chunk()
        if event.kind in (StreamEvent.MESSAGE_COMPLETE, StreamEvent.DONE):
            return self.stop_chunk()
        return None

    def completion(self, content: str) -> ChatCompletion:
        return ChatCompletion(
            id=self.completion_id,
            created=self.created,
            model=self.model,
            choices=[Choice(message=AssistantMessage(content=content))],
        )
