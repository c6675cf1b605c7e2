from __future__ import annotations

from datetime import timedelta

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Local dev: load from .env automatically.
    # In production: you typically inject real env vars instead.
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", env_file=".env", env_file_encoding="utf-8")

    # Env vars:
    # - RECORD_STORE: "memory" (default, single process only) or "firestore"
    # - USERNAME_GRACE_PERIOD_SECONDS: how long an unconfirmed hold blocks other claimants
    # - USERNAME_RELEASE_ON_FAILURE: drop a fresh hold right away when the profile write fails
    # - ADMIN_TOKEN: enables POST /admin/usernames/sweep when set
    # - AUTH_SECRET: signing secret for demo bearer tokens
    record_store: str = Field(default="memory", validation_alias="RECORD_STORE")

    username_grace_period_seconds: int = Field(default=300, ge=1, validation_alias="USERNAME_GRACE_PERIOD_SECONDS")
    username_release_on_failure: bool = Field(default=True, validation_alias="USERNAME_RELEASE_ON_FAILURE")

    usernames_collection: str = Field(default="usernames", validation_alias="USERNAMES_COLLECTION")
    users_collection: str = Field(default="users", validation_alias="USERS_COLLECTION")

    admin_token: str = Field(default="", validation_alias="ADMIN_TOKEN")
    auth_secret: str = Field(default="dev-insecure-secret-change-me", validation_alias="AUTH_SECRET")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    def model_post_init(self, __context):  # type: ignore[override]
        self.record_store = (self.record_store or "memory").lower().strip()

    @property
    def grace_period(self) -> timedelta:
        return timedelta(seconds=self.username_grace_period_seconds)


def get_settings() -> Settings:
    """Load settings from environment.

    Keep this as the single canonical constructor for Settings(). FastAPI
    dependencies and tests can override/monkeypatch this function.
    """
    return Settings()
