from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jiraterm.core.errors import ConfigError, ValidationError
from jiraterm.core.validators import validate_instance


class Credentials(BaseModel):
    """Connection details handed to the API client.

    Discovery (config files, companion CLI) happens elsewhere; by the time
    this object exists it is assumed to be complete.
    """

    instance_url: str
    username: str = ""
    token: str
    auth_type: Literal["basic", "bearer"] = "basic"

    @property
    def base_url(self) -> str:
        instance = self.instance_url.strip().rstrip("/")
        if not instance.startswith(("http://", "https://")):
            instance = f"https://{instance}"
        return f"{instance}/rest/api/3"


def validate_credentials(credentials: Credentials) -> None:
    if not credentials.instance_url.strip():
        raise ConfigError("Jira instance URL is empty")
    try:
        validate_instance(credentials.instance_url)
    except ValidationError as e:
        raise ConfigError(f"Jira instance URL is invalid: {e.message}") from e
    if credentials.auth_type == "basic" and not credentials.username.strip():
        raise ConfigError("Username is empty")
    if not credentials.token:
        raise ConfigError("API token is required")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    jira_instance: str = ""
    jira_username: str = ""
    jira_api_token: str = ""
    jira_auth_type: Literal["basic", "bearer"] = "basic"

    http_timeout: float = 30.0

    # Jira Cloud budget: 100 requests per minute
    rate_limit_capacity: float = 100.0
    rate_limit_refill_per_second: float = 100.0 / 60.0

    retry_max_attempts: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0

    cache_ticket_ttl: float = 5 * 60
    cache_search_ttl: float = 30
    cache_reference_ttl: float = 60 * 60
    cache_transitions_ttl: float = 15
    cache_comments_ttl: float = 5 * 60
    cache_max_entries: int = 2000

    log_level: str = "INFO"

    @field_validator("jira_auth_type", mode="before")
    @classmethod
    def _validate_auth_type(cls, v: Any) -> str:
        vv = str(v).strip().lower()
        if vv in {"api-token", "api_token", "token"}:
            vv = "basic"
        if vv not in {"basic", "bearer"}:
            raise ValueError("jira_auth_type must be one of: basic, bearer")
        return vv

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, v: Any) -> str:
        vv = str(v).strip().upper()
        if vv not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return vv

    @field_validator("retry_max_attempts")
    @classmethod
    def _validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        return v

    def credentials(self) -> Credentials:
        creds = Credentials(
            instance_url=self.jira_instance,
            username=self.jira_username,
            token=self.jira_api_token,
            auth_type=self.jira_auth_type,
        )
        validate_credentials(creds)
        return creds


settings = Settings()
