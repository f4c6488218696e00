from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    App settings.

    Notes:
    - Defaults are local and deterministic (SQLite file, in-memory cache in development).
    - Token settings live in ``hierarchy_authz.token.config`` and are read from the same
      ``AUTHZ_`` environment namespace.
    """

    model_config = SettingsConfigDict(env_prefix="AUTHZ_", extra="ignore")

    profile: Literal["development", "production"] = "development"
    db_url: str | None = None
    log_level: str = "INFO"

    redis_url: str = "redis://localhost:6379/0"
    redis_timeout_seconds: float = 2.0
    cache_key_prefix: str = "authz:"
    decision_ttl_seconds: int = 300
    hierarchy_ttl_seconds: int = 900

    fallback_to_auth_only: bool = True
    circuit_breaker_enabled: bool | None = None
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 30.0
    debug_logging: bool | None = None
    audit_decisions: bool | None = None

    require_explicit_primary: bool = False
    policy_seed_path: str | None = None
    expiry_sweep_seconds: float = 60.0

    def resolved_db_url(self) -> str:
        if self.db_url:
            return self.db_url

        repo_root = Path(__file__).resolve().parents[1]
        db_path = repo_root / "authz.db"
        return f"sqlite:///{db_path}"

    def resolved_policy_seed_path(self) -> Path:
        if self.policy_seed_path:
            return Path(self.policy_seed_path)

        repo_root = Path(__file__).resolve().parents[1]
        return repo_root / "config" / "policy_seed.yaml"


@lru_cache
def get_settings() -> Settings:
    return Settings()
