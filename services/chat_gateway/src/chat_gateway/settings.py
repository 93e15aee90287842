from functools import lru_cache
from urllib.parse import urlsplit

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
)
PROXY_SCHEMES = {"http", "https", "socks5", "socks5h"}
PROMPT_MODES = {"flat", "turns"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_env: str = "dev"
    log_level: str = "INFO"
    host: str = Field(default="0.0.0.0", validation_alias="LISTEN_HOST")
    port: int = Field(default=3040, validation_alias="PORT")
    all_proxy: str | None = Field(default=None, validation_alias="ALL_PROXY")
    authorization: str | None = Field(default=None, validation_alias="AUTHORIZATION")
    backend_base_url: str = Field(
        default="https://chat.openai.com", validation_alias="BACKEND_BASE_URL"
    )
    backend_user_agent: str = Field(
        default=DEFAULT_USER_AGENT, validation_alias="BACKEND_USER_AGENT"
    )
    connect_timeout_seconds: float = Field(default=10, validation_alias="CONNECT_TIMEOUT_SECONDS")
    challenge_timeout_seconds: float = Field(
        default=15, validation_alias="CHALLENGE_TIMEOUT_SECONDS"
    )
    credential_timeout_seconds: float = Field(
        default=15, validation_alias="CREDENTIAL_TIMEOUT_SECONDS"
    )
    conversation_timeout_seconds: float = Field(
        default=60, validation_alias="CONVERSATION_TIMEOUT_SECONDS"
    )
    retry_attempts: int = Field(default=3, ge=1, validation_alias="RETRY_ATTEMPTS")
    retry_backoff_seconds: float = Field(default=0.5, ge=0, validation_alias="RETRY_BACKOFF_SECONDS")
    pow_max_attempts: int = Field(default=1_000_000, ge=1, validation_alias="POW_MAX_ATTEMPTS")
    solver_workers: int = Field(default=2, ge=1, validation_alias="SOLVER_WORKERS")
    prompt_mode: str = Field(default="flat", validation_alias="PROMPT_MODE")

    @field_validator("all_proxy", "authorization")
    @classmethod
    def _empty_as_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("all_proxy")
    @classmethod
    def _proxy_scheme(cls, value: str | None) -> str | None:
        if value is None:
            return value
        scheme = urlsplit(value).scheme.lower()
        if scheme not in PROXY_SCHEMES:
            raise ValueError("ALL_PROXY must use one of: http, https, socks5, socks5h")
        return value

    @field_validator("prompt_mode")
    @classmethod
    def _validate_prompt_mode(cls, value: str) -> str:
        value = value.lower()
        if value not in PROMPT_MODES:
            raise ValueError("PROMPT_MODE must be one of: flat, turns")
        return value

    @field_validator("backend_base_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()
