"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a local .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_path: str = Field(default="rewards.db")

    # Rewards
    reward_metadata_base_url: str = Field(default="https://localhost:3001/api/v1/reward")

    # Ledger gateway; unset means the in-process simulated ledger
    ledger_url: Optional[str] = Field(default=None)
    ledger_timeout_seconds: float = Field(default=10.0, gt=0)

    # Fernet key sealing custody keys at rest
    key_encryption_key: str = Field(default="")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001)
    api_version: str = Field(default="v1")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    @property
    def api_base_path(self) -> str:
        return f"/api/{self.api_version}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
