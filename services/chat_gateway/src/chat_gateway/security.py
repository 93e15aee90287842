import hmac

from fastapi import Request

from chat_gateway.errors import Unauthorized

AUTHORIZATION_HEADER = "Authorization"
PROTECTED_PREFIX = "/v1"


def requires_authorization(request: Request, expected: str | None) -> bool:
    if not expected or request.method == "OPTIONS":
        return False
    return request.url.path.startswith(PROTECTED_PREFIX)


def verify_authorization(request: Request, expected: str) -> None:
    """Compare the Authorization header with the configured value verbatim.

    The value only guards this gateway and is never forwarded upstream.
    """
    provided = request.headers.get(AUTHORIZATION_HEADER)
    if not provided:
        raise Unauthorized("missing authorization header")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise Unauthorized("authorization mismatch")
