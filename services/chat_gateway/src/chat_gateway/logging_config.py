import logging
import logging.config
import re

from .identity import get_request_id

_BEARER_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*")
_SECRET_KV_RE = re.compile(
    r"(?i)\b(authorization|token|secret|cookie|set-cookie|prepare_token|proofofwork)\b\s*[:=]\s*([^\s,;]+)"
)
_SENTINEL_RE = re.compile(r"(?i)\b(openai-sentinel-[a-z-]+-token)\b\s*[:=]\s*([^\s,;]+)")
_PROOF_TOKEN_RE = re.compile(r"gAAAAAB[A-Za-z0-9+/=]+")
_CONTENT_JSON_RE = re.compile(r'(?i)("(?:content|parts)"\s*:\s*\[?\s*")[^"]*(")')
_CONTENT_KV_RE = re.compile(r"(?i)(\bcontent\b\s*[:=]\s*)([^\s,;]+)")


def _redact_text(text: str) -> str:
    text = _CONTENT_JSON_RE.sub(r"\1[redacted]\2", text)
    text = _CONTENT_KV_RE.sub(r"\1[redacted]", text)
    text = _BEARER_RE.sub("Bearer [redacted]", text)
    text = _SENTINEL_RE.sub(r"\1=[redacted]", text)
    text = _PROOF_TOKEN_RE.sub("[redacted_proof]", text)
    text = _SECRET_KV_RE.sub(r"\1=[redacted]", text)
    return text


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


class RedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        record.msg = _redact_text(message)
        record.args = ()
        return True


def configure_logging(log_level: str) -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "request_id": {"()": "chat_gateway.logging_config.RequestIdFilter"},
                "redact": {"()": "chat_gateway.logging_config.RedactionFilter"},
            },
            "formatters": {
                "standard": {
                    "format": "%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s"
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "filters": ["request_id", "redact"],
                    "level": log_level,
                }
            },
            "loggers": {
                "uvicorn": {
                    "handlers": ["console"],
                    "level": log_level,
                    "propagate": False,
                },
                "uvicorn.error": {
                    "handlers": ["console"],
                    "level": log_level,
                    "propagate": False,
                },
                "uvicorn.access": {
                    "handlers": ["console"],
                    "level": log_level,
                    "propagate": False,
                },
                "httpx": {"level": "WARNING"},
                "httpcore": {"level": "WARNING"},
            },
            "root": {"handlers": ["console"], "level": log_level},
        }
    )
