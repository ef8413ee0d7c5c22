from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunnerSettings(BaseSettings):
    """
    Runtime knobs read from CURL_RUNNER_* environment variables (or .env).

    Nothing reads these implicitly: pass an instance to CurlRunner /
    execute() so every call sees an explicit, immutable snapshot.
    """

    model_config = SettingsConfigDict(
        env_prefix="CURL_RUNNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    allow_insecure_auth: bool = Field(
        default=False,
        description="Allow basic/bearer credentials over plain http://.",
    )
    max_body_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=0,
        description="Largest request body accepted by the validator.",
    )
    max_headers: int = Field(default=100, ge=0)
    max_header_bytes: int = Field(default=8192, ge=1)
    max_url_bytes: int = Field(default=8192, ge=1)
    max_form_fields: int = Field(default=1000, ge=0)
    max_query_params: int = Field(default=1000, ge=0)

    user_agent: str = Field(
        default="curl-runner/0.1",
        min_length=1,
        description="User-Agent sent when the command does not set one.",
    )
    default_timeout: float = Field(
        default=0.0,
        ge=0,
        description="Applied when neither the caller nor the command sets a deadline (0 = none).",
    )
    log_level: Optional[str] = Field(
        default=None,
        description="Level for configure_logging(); None leaves logging untouched.",
    )
