import asyncio
import json

import httpx

from chat_gateway.backend import CHALLENGE_PATH, CONVERSATION_PATH, CREDENTIAL_PATH

BLOCKED_BODY = {"detail": "Unusual activity has been detected from your device."}


def assistant_message(text: str, status: str = "in_progress", message_id: str = "msg-1") -> dict:
    return {
        "message": {
            "id": message_id,
            "author": {"role": "assistant"},
            "content": {"content_type": "text", "parts": [text]},
            "status": status,
        },
        "conversation_id": "conv-1",
        "error": None,
    }


def reply_events(*fragments: str) -> list:
    text = ""
    payloads: list = []
    for fragment in fragments:
        text += fragment
        payloads.append(assistant_message(text))
    payloads.append(assistant_message(text, status="finished_successfully"))
    payloads.append("[DONE]")
    return payloads


def sse_body(*payloads) -> bytes:
    frames = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        frames.append(f"data: {data}\n\n")
    return "".join(frames).encode("utf-8")


def parse_sse(text: str) -> list[str]:
    return [frame[len("data: "):] for frame in text.split("\n\n") if frame]


class HangingStream(httpx.AsyncByteStream):
    """Sends one chunk, then stalls until closed."""

    def __init__(self, first: bytes) -> None:
        self.first = first
        self.closed = False

    async def __aiter__(self):
        yield self.first
        await asyncio.sleep(3600)

    async def aclose(self) -> None:
        self.closed = True


class BrokenStream(httpx.AsyncByteStream):
    """Sends one chunk, then fails with ``error``."""

    def __init__(self, first: bytes, error: type[httpx.RequestError]) -> None:
        self.first = first
        self.error = error

    async def __aiter__(self):
        yield self.first
        raise self.error("stub stream failure")

    async def aclose(self) -> None:
        pass


class StubBackend:
    def __init__(self) -> None:
        self.required = True
        self.seed = "0.4213"
        self.difficulty = "0fffff"
        self.events: list = reply_events("Hi there!")
        self.stream: httpx.AsyncByteStream | None = None
        self.content_type = "text/event-stream"
        self.failures: dict[str, list] = {}
        self.requests: list[httpx.Request] = []

    def fail(self, path: str, *failures) -> None:
        """Queue HTTP status codes or httpx exception classes for ``path``."""
        self.failures.setdefault(path, []).extend(failures)

    @property
    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        pending = self.failures.get(path)
        if pending:
            failure = pending.pop(0)
            if isinstance(failure, int):
                return httpx.Response(failure, json=BLOCKED_BODY)
            raise failure("stub failure", request=request)

        if path == CHALLENGE_PATH:
            return httpx.Response(
                200,
                json={
                    "prepare_token": "prepare-1",
                    "proofofwork": {
                        "required": self.required,
                        "seed": self.seed,
                        "difficulty": self.difficulty,
                    },
                },
            )
        if path == CREDENTIAL_PATH:
            return httpx.Response(200, json={"token": "requirements-token-1"})
        if path == CONVERSATION_PATH:
            headers = {"content-type": self.content_type}
            if self.stream is not None:
                return httpx.Response(200, headers=headers, stream=self.stream)
            return httpx.Response(200, headers=headers, content=sse_body(*self.events))
        return httpx.Response(404)
