from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "data" / "siteproof.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field(default=f"sqlite:///{DEFAULT_SQLITE_PATH}")
    auth_secret_key: str = Field(default="change-me")
    auth_access_token_expire_minutes: int = Field(default=60 * 24)
    default_admin_email: str = Field(default="admin@example.com")
    default_admin_password: str = Field(default="admin123")
    default_company_name: str = Field(default="Head Contractor")
    hold_point_stale_days: int = Field(default=7)
    ncr_number_max_retries: int = Field(default=5)
    notification_webhook_url: Optional[str] = Field(default=None)
    notification_max_attempts: int = Field(default=5)
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="readable")
    cors_origins: str = Field(default="http://localhost:3000,http://localhost:5173")

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
