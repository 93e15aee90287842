from shared.schemas import ErrorBody, ErrorResponse


class GatewayError(Exception):
    """Base of every failure the gateway turns into an OpenAI error envelope.

    ``message`` is what the client sees; ``detail`` stays in the logs.
    """

    status_code = 500
    err_type = "GatewayError"
    message = "gateway error"

    def __init__(self, detail: str | None = None, *, message: str | None = None) -> None:
        super().__init__(detail or message or self.message)
        self.detail = detail
        if message is not None:
            self.message = message

    def to_envelope(self) -> ErrorResponse:
        return ErrorResponse(error=ErrorBody(message=self.message, type=self.err_type))


class MalformedRequest(GatewayError):
    status_code = 400
    err_type = "MalformedRequest"
    message = "invalid request body"


class Unauthorized(GatewayError):
    status_code = 401
    err_type = "Unauthorized"
    message = "No authorization header or invalid authorization value."


class ChallengeUnsolvable(GatewayError):
    status_code = 502
    err_type = "ChallengeUnsolvable"
    message = "upstream challenge could not be solved"


class BackendRejected(GatewayError):
    status_code = 502
    err_type = "BackendRejected"
    message = "upstream rejected the request"


class BackendUnavailable(GatewayError):
    status_code = 502
    err_type = "BackendUnavailable"
    message = "upstream unavailable"


class BackendTimeout(GatewayError):
    status_code = 504
    err_type = "BackendTimeout"
    message = "upstream timeout"


class StreamTruncated(GatewayError):
    status_code = 502
    err_type = "StreamTruncated"
    message = "upstream stream ended before completion"


class InternalTranslationError(GatewayError):
    status_code = 500
    err_type = "InternalTranslationError"
    message = "unexpected upstream response"
