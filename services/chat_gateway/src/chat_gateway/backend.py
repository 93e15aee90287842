"""Wire contract of the login-free ChatGPT web backend.

Everything that depends on the backend's private endpoints lives here: paths,
browser headers, the requirements/proof exchange payloads, the conversation
request body and the decoding of its event stream. The backend changes this
contract without notice, so a change upstream should only need edits in this
module.
"""

import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone

from chat_gateway.challenge import BackendChallenge, ProofConfig
from chat_gateway.errors import InternalTranslationError
from chat_gateway.identity import DeviceIdentity, random_id

CHALLENGE_PATH = "/backend-anon/sentinel/chat-requirements/prepare"
CREDENTIAL_PATH = "/backend-anon/sentinel/chat-requirements/finalize"
CONVERSATION_PATH = "/backend-anon/conversation"
BACKEND_MODEL = "text-davinci-002-render-sha"

DEVICE_ID_HEADER = "oai-device-id"
REQUIREMENTS_TOKEN_HEADER = "openai-sentinel-chat-requirements-token"
PROOF_TOKEN_HEADER = "openai-sentinel-proof-token"

DONE_MARKER = "[DONE]"
FINISHED_STATUS = "finished_successfully"
DATE_FORMAT = "%a %b %d %Y %H:%M:%S GMT%z (Coordinated Universal Time)"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendTurn:
    role: str
    content: str


@dataclass(frozen=True)
class Requirements:
    challenge: BackendChallenge
    prepare_token: str


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    text: str = ""
    detail: str | None = None

    MESSAGE_DELTA = "message_delta"
    MESSAGE_COMPLETE = "message_complete"
    ERROR = "error"
    DONE = "done"

    @classmethod
    def delta(cls, text: str) -> "StreamEvent":
        return cls(cls.MESSAGE_DELTA, text=text)

    @classmethod
    def complete(cls) -> "StreamEvent":
        return cls(cls.MESSAGE_COMPLETE)

    @classmethod
    def error(cls, detail: str) -> "StreamEvent":
        return cls(cls.ERROR, detail=detail)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(cls.DONE)

    @property
    def terminal(self) -> bool:
        return self.kind in (self.MESSAGE_COMPLETE, self.ERROR, self.DONE)


def browser_headers(base_url: str, user_agent: str) -> dict[str, str]:
    return {
        "accept": "*/*",
        "accept-language": "en",
        "cache-control": "no-cache",
        "content-type": "application/json",
        "oai-language": "en-US",
        "origin": base_url,
        "pragma": "no-cache",
        "priority": "u=1, i",
        "referer": f"{base_url}/",
        "sec-ch-ua": '"Google Chrome"; v="123", "Not:A-Brand"; v="8", "Chromium"; v="123"',
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "same-origin",
        "user-agent": user_agent,
    }


def random_screen() -> int:
    return random.randint(2000, 8000)


def proof_config(screen: int, user_agent: str, now: datetime | None = None) -> ProofConfig:
    now = now or datetime.now(timezone.utc)
    return ProofConfig(screen=screen, timestamp=now.strftime(DATE_FORMAT), user_agent=user_agent)


def challenge_payload(device: DeviceIdentity) -> dict:
    return {"p": None, "device_id": str(device)}


def parse_requirements(data: object) -> Requirements:
    if not isinstance(data, dict):
        raise InternalTranslationError(f"requirements payload is not an object: {data!r}")
    prepare_token = data.get("prepare_token") or data.get("token")
    pow_data = data.get("proofofwork") or {}
    if not isinstance(prepare_token, str) or not isinstance(pow_data, dict):
        raise InternalTranslationError(f"unexpected requirements payload: {data!r}")
    required = bool(pow_data.get("required", True))
    seed = pow_data.get("seed")
    difficulty = pow_data.get("difficulty")
    if required and not (isinstance(seed, str) and isinstance(difficulty, str)):
        raise InternalTranslationError(f"unexpected proofofwork payload: {data!r}")
    challenge = BackendChallenge(seed=seed or "", difficulty=difficulty or "", required=required)
    return Requirements(challenge=challenge, prepare_token=prepare_token)


def credential_payload(requirements: Requirements, proof_token: str | None) -> dict:
    return {"prepare_token": requirements.prepare_token, "proofofwork": proof_token}


def parse_credential(data: object) -> str:
    token = data.get("token") if isinstance(data, dict) else None
    if not isinstance(token, str) or not token:
        raise InternalTranslationError(f"unexpected credential payload: {data!r}")
    return token


def conversation_headers(
    device: DeviceIdentity, credential: str, proof_token: str | None
) -> dict[str, str]:
    headers = {
        DEVICE_ID_HEADER: str(device),
        REQUIREMENTS_TOKEN_HEADER: credential,
        "accept": "text/event-stream",
    }
    if proof_token:
        headers[PROOF_TOKEN_HEADER] = proof_token
    return headers


def conversation_payload(turns: list[BackendTurn]) -> dict:
    messages = [
        {
            "id": random_id(),
            "author": {"role": turn.role},
            "content": {"content_type": "text", "parts": [turn.content]},
            "metadata": {},
        }
        for turn in turns
    ]
    return {
        "action": "next",
        "messages": messages,
        "parent_message_id": random_id(),
        "model": BACKEND_MODEL,
        "timezone_offset_min": 0,
        "suggestions": [],
        "history_and_training_disabled": True,
        "conversation_mode": {"kind": "primary_assistant"},
        "force_paragen": False,
        "force_paragen_model_slug": "",
        "force_nulligen": False,
        "force_rate_limit": False,
        "websocket_request_id": random_id(),
    }


class EventDecoder:
    """Turns backend ``data:`` payloads into StreamEvents.

    The backend resends the whole assistant text on every event; only the
    unseen suffix becomes a delta.
    """

    def __init__(self) -> None:
        self._message_id: str | None = None
        self._seen_chars = 0
        self._completed = False

    @staticmethod
    def _unexpected(data: str) -> InternalTranslationError:
        logger.error("unexpected backend event shape payload=%s", data)
        return InternalTranslationError(f"unexpected backend event: {data!r}")

    def decode(self, data: str) -> list[StreamEvent]:
        if data.strip() == DONE_MARKER:
            return [StreamEvent.done()]
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.error("undecodable backend event payload=%s", data)
            raise InternalTranslationError(f"undecodable backend event: {data!r}")
        if not isinstance(payload, dict):
            raise self._unexpected(data)

        error = payload.get("error")
        if error:
            return [StreamEvent.error(error if isinstance(error, str) else json.dumps(error))]

        message = payload.get("message")
        if message is None:
            return []
        if not isinstance(message, dict):
            raise self._unexpected(data)
        author = message.get("author") or {}
        content = message.get("content") or {}
        if not isinstance(author, dict) or not isinstance(content, dict):
            raise self._unexpected(data)
        if author.get("role") != "assistant":
            return []
        parts = content.get("parts") or []
        if not isinstance(parts, list):
            raise self._unexpected(data)
        if not parts or not isinstance(parts[0], str):
            return []

        message_id = message.get("id")
        if message_id != self._message_id:
            self._message_id = message_id
            self._seen_chars = 0

        text = parts[0]
        events = []
        suffix = text[self._seen_chars :]
        if suffix:
            events.append(StreamEvent.delta(suffix))
        self._seen_chars = max(self._seen_chars, len(text))
        if message.get("status") == FINISHED_STATUS and not self._completed:
            self._completed = True
            events.append(StreamEvent.complete())
        return events
