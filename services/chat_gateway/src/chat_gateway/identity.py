import secrets
import string
import uuid
from contextvars import ContextVar
from dataclasses import dataclass

REQUEST_ID_HEADER = "X-Request-ID"
COMPLETION_ID_PREFIX = "chatcmpl-"
_ID_ALPHABET = string.ascii_letters + string.digits

_request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")


def set_request_id(value: str) -> None:
    _request_id_ctx.set(value)


def get_request_id() -> str:
    return _request_id_ctx.get()


def random_id() -> str:
    return str(uuid.uuid4())


def new_completion_id() -> str:
    return COMPLETION_ID_PREFIX + "".join(secrets.choice(_ID_ALPHABET) for _ in range(16))


@dataclass(frozen=True)
class DeviceIdentity:
    """Opaque client fingerprint attached to every backend call of one session.

    A fresh value is drawn from uuid4 on each call to ``generate``, so
    concurrent requests never share counter state.
    """

    value: str

    @classmethod
    def generate(cls) -> "DeviceIdentity":
        return cls(random_id())

    def __str__(self) -> str:
        return self.value
