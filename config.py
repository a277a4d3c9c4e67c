from __future__ import annotations

from typing import Annotated, Any, List, Optional

import json
import re
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env (Pydantic v2)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")

    # SMM panel
    smm_api_url: str = Field(..., alias="SMM_API_URL")
    smm_api_key: str = Field(..., alias="SMM_API_KEY")
    vendor_timeout_seconds: float = Field(20.0, alias="VENDOR_TIMEOUT_SECONDS")
    services_cache_seconds: int = Field(60, alias="SERVICES_CACHE_SECONDS")

    # Reconciliation alerts (optional)
    bot_token: Optional[str] = Field(None, alias="BOT_TOKEN")
    admin_ids: Annotated[List[int], NoDecode] = Field(default_factory=list, alias="ADMIN_IDS")

    # HTTP
    allowed_origins: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["*"], alias="ALLOWED_ORIGINS")
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    @field_validator("admin_ids", mode="before")
    @classmethod
    def _parse_admin_ids(cls, v: Any) -> List[int]:
        if v is None:
            return []
        if isinstance(v, list):
            return [int(x) for x in v]
        if isinstance(v, (int, float)):
            return [int(v)]
        s = str(v).strip()
        if not s:
            return []
        if s.startswith("[") and s.endswith("]"):
            try:
                data = json.loads(s)
                if isinstance(data, list):
                    return [int(x) for x in data]
            except ValueError:
                pass
        parts = [p for p in re.split(r"[\s,]+", s) if p]
        return [int(p) for p in parts]

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _parse_origins(cls, v: Any) -> List[str]:
        if v is None:
            return ["*"]
        if isinstance(v, list):
            return [str(x).strip() for x in v if str(x).strip()]
        return [item.strip() for item in str(v).split(",") if item.strip()] or ["*"]

    @field_validator("vendor_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("VENDOR_TIMEOUT_SECONDS must be positive")
        return v


_settings_singleton: Optional[Settings] = None


def load_settings() -> Settings:
    """Return a cached Settings() instance loaded from .env."""
    global _settings_singleton
    if _settings_singleton is None:
        _settings_singleton = Settings()
    return _settings_singleton
