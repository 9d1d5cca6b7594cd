"""Runtime configuration for the compliance engine."""
from functools import lru_cache
from typing import Dict, List

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="COMPLIANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "compliance-engine"
    log_level: str = "INFO"

    # PostgreSQL in production (DATABASE_URL), SQLite locally
    database_url: str = Field(
        default="sqlite:///./compliance.db",
        validation_alias=AliasChoices("COMPLIANCE_DATABASE_URL", "DATABASE_URL"),
    )

    # Days before expiry at which an item turns at-risk, per kind
    credential_check_warning_days: int = Field(default=90, ge=0)
    regulatory_requirement_warning_days: int = Field(default=30, ge=0)
    standard_warning_days: int = Field(default=30, ge=0)
    # Per-category override, e.g. {"safeguarding": 120}
    category_warning_days: Dict[str, int] = Field(default_factory=dict)

    safety_critical_categories: List[str] = Field(
        default_factory=lambda: ["safety", "safeguarding", "infection-control"]
    )
    compliant_score_threshold: int = Field(default=80, ge=0, le=100)
    upcoming_deadline_days: int = Field(default=30, ge=0)

    @field_validator("database_url")
    @classmethod
    def _fix_postgres_scheme(cls, value: str) -> str:
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        if value.startswith("postgres://"):
            return value.replace("postgres://", "postgresql://", 1)
        return value

    @field_validator("category_warning_days")
    @classmethod
    def _normalise_category_keys(cls, value: Dict[str, int]) -> Dict[str, int]:
        return {key.strip().lower(): days for key, days in value.items()}


@lru_cache
def get_settings() -> Settings:
    return Settings()
