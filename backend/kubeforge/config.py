from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="KUBEFORGE_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: Literal["development", "production", "test"] = "development"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    log_json: bool = False
    log_file: str | None = None
    # Cluster access; a cluster_id on requests selects a kubeconfig context
    kube_context: str | None = None
    kube_config_path: str | None = None
    in_cluster: bool = False
    request_timeout_seconds: float = 30.0
    rate_limit_requests_per_minute: int = 120
    cache_ttl_seconds: int = 30
    # Editor sessions held in memory
    session_ttl_seconds: int = 1800
    max_sessions: int = 256
    # Create-flow defaults
    default_namespace: str = "default"
    placeholder_image: str = Field(default="nginx:latest", description="Image used by new workload drafts")
    placeholder_container_name: str = "main"
    database_url: str = "sqlite+aiosqlite:///./kubeforge.db"
    audit_enabled: bool = True
    allowed_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    @computed_field
    @property
    def is_debug(self) -> bool:
        return self.app_env == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
