import os
from typing import Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.domain.exceptions import ConfigurationError
from src.domain.layout import CommitLayout, GalaxyLayout


class Settings(BaseModel):
    """
    Runtime settings, read from the environment (and a .env file loaded by the entry point).
    """
    model_config = ConfigDict(frozen=True)

    github_token: str = Field(..., min_length=1)
    database_url: str = Field(..., min_length=1)
    galaxy_layout: GalaxyLayout = GalaxyLayout.SPIRAL
    commit_layout: CommitLayout = CommitLayout.CLUSTERED
    list_cache_ttl: float = Field(300, ge=0)
    resource_cache_ttl: float = Field(60, ge=0)
    rate_limit_cooldown: float = Field(60, gt=0)
    request_timeout: float = Field(30, gt=0)
    sync_concurrency: int = Field(3, ge=1)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        github_token = env.get("GITHUB_TOKEN")
        database_url = env.get("DATABASE_URL")
        if not github_token:
            raise ConfigurationError("GITHUB_TOKEN is not set in the environment.")
        if not database_url:
            raise ConfigurationError("DATABASE_URL is not set in the environment.")

        optional = {
            "galaxy_layout": env.get("GALAXY_LAYOUT"),
            "commit_layout": env.get("COMMIT_LAYOUT"),
            "list_cache_ttl": env.get("GITHUB_LIST_CACHE_TTL"),
            "resource_cache_ttl": env.get("GITHUB_RESOURCE_CACHE_TTL"),
            "rate_limit_cooldown": env.get("GITHUB_RATE_LIMIT_COOLDOWN"),
            "request_timeout": env.get("GITHUB_REQUEST_TIMEOUT"),
            "sync_concurrency": env.get("SYNC_CONCURRENCY"),
            "log_level": env.get("LOG_LEVEL"),
        }

        try:
            return cls(
                github_token=github_token,
                database_url=database_url,
                **{key: value for key, value in optional.items() if value},
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
