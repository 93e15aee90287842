import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

import httpx

from chat_gateway import backend
from chat_gateway.backend import BackendTurn, EventDecoder, Requirements, StreamEvent
from chat_gateway.challenge import ChallengeSolver
from chat_gateway.errors import (
    BackendRejected,
    BackendTimeout,
    BackendUnavailable,
    InternalTranslationError,
    StreamTruncated,
)
from chat_gateway.identity import DeviceIdentity
from chat_gateway.settings import Settings

T = TypeVar("T")

_LOG_BODY_LIMIT = 512

logger = logging.getLogger(__name__)


def _retryable_for_status(status_code: int) -> bool:
    return status_code >= 500


def _raise_for_status(step: str, status_code: int, body: bytes) -> None:
    if status_code < 400:
        return
    logger.warning(
        "backend %s failed status=%s body=%s",
        step,
        status_code,
        body[:_LOG_BODY_LIMIT].decode("utf-8", "replace"),
    )
    if _retryable_for_status(status_code):
        raise BackendUnavailable(f"{step} status {status_code}")
    raise BackendRejected(f"{step} status {status_code}")


class ConversationStream:
    """Open backend event stream of one conversation attempt.

    Owns the HTTP client of the attempt; ``aclose`` releases both the response
    and the client.
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self._client = client
        self._response = response
        self._decoder = EventDecoder()
        self._events: AsyncIterator[StreamEvent] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def events(self) -> AsyncIterator[StreamEvent]:
        if self._events is None:
            self._events = self._iter_events()
        return self._events

    async def _iter_events(self) -> AsyncIterator[StreamEvent]:
        data_lines: list[str] = []
        try:
            async for line in self._response.aiter_lines():
                if line.startswith("data:"):
                    value = line[5:]
                    data_lines.append(value[1:] if value.startswith(" ") else value)
                    continue
                if line == "" and data_lines:
                    data = "\n".join(data_lines)
                    data_lines = []
                    for event in self._decoder.decode(data):
                        yield event
                        if event.kind == StreamEvent.DONE:
                            return
            if data_lines:
                for event in self._decoder.decode("\n".join(data_lines)):
                    yield event
                    if event.kind == StreamEvent.DONE:
                        return
        except httpx.TimeoutException:
            raise BackendTimeout("conversation stream read timeout")
        except httpx.RequestError as exc:
            raise StreamTruncated(f"conversation stream broke: {exc.__class__.__name__}")
        raise StreamTruncated("conversation stream ended without completion marker")

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._events is not None:
                await self._events.aclose()
            await self._response.aclose()
        finally:
            await self._client.aclose()

    async def __aenter__(self) -> "ConversationStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class SessionClient:
    """Performs the challenge, credential and conversation calls for a request.

    Every conversation attempt gets a fresh device identity and its own
    ``httpx.AsyncClient``; nothing is shared between requests except the
    read-only settings and the solver.
    """

    def __init__(
        self,
        settings: Settings,
        solver: ChallengeSolver,
        transport: httpx.AsyncBaseTransport | None = None,
        screen: int | None = None,
    ) -> None:
        self._settings = settings
        self._solver = solver
        self._transport = transport
        self._screen = screen if screen is not None else backend.random_screen()

    def _timeout(self, seconds: float) -> httpx.Timeout:
        return httpx.Timeout(seconds, connect=self._settings.connect_timeout_seconds)

    def _new_client(self) -> httpx.AsyncClient:
        settings = self._settings
        kwargs = {
            "base_url": settings.backend_base_url,
            "headers": backend.browser_headers(
                settings.backend_base_url, settings.backend_user_agent
            ),
            "timeout": self._timeout(settings.conversation_timeout_seconds),
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif settings.all_proxy:
            kwargs["proxy"] = settings.all_proxy
        return httpx.AsyncClient(**kwargs)

    async def open_conversation(self, turns: list[BackendTurn]) -> ConversationStream:
        device = DeviceIdentity.generate()
        client = self._new_client()
        try:
            requirements = await self._with_retries(
                "challenge", lambda: self._fetch_challenge(client, device)
            )
            proof_token = None
            if requirements.challenge.required:
                config = backend.proof_config(self._screen, self._settings.backend_user_agent)
                proof = await self._solver.solve(requirements.challenge, config)
                proof_token = proof.token
            credential = await self._with_retries(
                "credential",
                lambda: self._exchange_credential(client, device, requirements, proof_token),
            )
            response = await self._open_stream(client, device, credential, proof_token, turns)
        except BaseException:
            await client.aclose()
            raise
        return ConversationStream(client, response)

    async def _with_retries(self, step: str, call: Callable[[], Awaitable[T]]) -> T:
        attempts = self._settings.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except (BackendTimeout, BackendUnavailable) as exc:
                if attempt == attempts:
                    raise
                delay = self._settings.retry_backoff_seconds * (2 ** (attempt - 1))
                delay *= random.uniform(0.5, 1.5)
                logger.warning(
                    "backend %s transient failure attempt=%s/%s error=%s retry_in=%.2fs",
                    step,
                    attempt,
                    attempts,
                    exc.err_type,
                    delay,
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    async def _post_json(
        self,
        client: httpx.AsyncClient,
        step: str,
        path: str,
        payload: dict,
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> object:
        try:
            resp = await client.post(
                path, json=payload, headers=headers, timeout=self._timeout(timeout_seconds)
            )
        except httpx.TimeoutException:
            raise BackendTimeout(f"{step} timeout")
        except httpx.TransportError as exc:
            raise BackendUnavailable(f"{step} connection error: {exc.__class__.__name__}")

        _raise_for_status(step, resp.status_code, resp.content)
        try:
            return resp.json()
        except ValueError:
            logger.error("non-json backend %s response body=%s", step, resp.text[:_LOG_BODY_LIMIT])
            raise InternalTranslationError(f"{step} returned non-json body")

    async def _fetch_challenge(
        self, client: httpx.AsyncClient, device: DeviceIdentity
    ) -> Requirements:
        data = await self._post_json(
            client,
            "challenge",
            backend.CHALLENGE_PATH,
            backend.challenge_payload(device),
            {backend.DEVICE_ID_HEADER: str(device)},
            self._settings.challenge_timeout_seconds,
        )
        return backend.parse_requirements(data)

    async def _exchange_credential(
        self,
        client: httpx.AsyncClient,
        device: DeviceIdentity,
        requirements: Requirements,
        proof_token: str | None,
    ) -> str:
        data = await self._post_json(
            client,
            "credential",
            backend.CREDENTIAL_PATH,
            backend.credential_payload(requirements, proof_token),
            {backend.DEVICE_ID_HEADER: str(device)},
            self._settings.credential_timeout_seconds,
        )
        return backend.parse_credential(data)

    async def _open_stream(
        self,
        client: httpx.AsyncClient,
        device: DeviceIdentity,
        credential: str,
        proof_token: str | None,
        turns: list[BackendTurn],
    ) -> httpx.Response:
        request = client.build_request(
            "POST",
            backend.CONVERSATION_PATH,
            json=backend.conversation_payload(turns),
            headers=backend.conversation_headers(device, credential, proof_token),
            timeout=self._timeout(self._settings.conversation_timeout_seconds),
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException:
            raise BackendTimeout("conversation timeout")
        except httpx.TransportError as exc:
            raise BackendUnavailable(f"conversation connection error: {exc.__class__.__name__}")

        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            _raise_for_status("conversation", response.status_code, body)

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" not in content_type:
            body = await response.aread()
            await response.aclose()
            logger.error(
                "backend conversation returned content_type=%s body=%s",
                content_type,
                body[:_LOG_BODY_LIMIT].decode("utf-8", "replace"),
            )
            raise InternalTranslationError(f"conversation content type {content_type!r}")
        return response
