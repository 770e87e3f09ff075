"""
Runtime configuration for the Focus Dial time tracker.

Every value comes from an environment variable so the same image runs in
development, docker compose and production.
"""
from __future__ import annotations

import os
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class ProjectMetadataPolicy(str, Enum):
    """What a webhook does to name/color of an already known device project."""

    NEVER = "never"
    IF_CHANGED = "if_changed"
    ALWAYS = "always"


class AppConfig(BaseModel):
    database_url: str = Field("mongodb://localhost:27017", description="MongoDB connection string")
    database_name: str = Field("focusdial", description="MongoDB database name")
    port: int = Field(8000, ge=1, le=65535)
    app_env: str = Field("development", description="development | production")
    admin_token: Optional[str] = Field(None, description="Allows creating the first API key of a user")
    project_metadata_update: ProjectMetadataPolicy = ProjectMetadataPolicy.NEVER
    workday_start_hour: int = Field(8, ge=0, le=23)
    log_level: str = "INFO"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @classmethod
    def from_env(cls) -> "AppConfig":
        values = {
            "database_url": os.getenv("DATABASE_URL"),
            "database_name": os.getenv("DATABASE_NAME"),
            "port": os.getenv("PORT"),
            "app_env": os.getenv("APP_ENV"),
            "admin_token": os.getenv("ADMIN_TOKEN") or None,
            "project_metadata_update": os.getenv("PROJECT_METADATA_UPDATE"),
            "workday_start_hour": os.getenv("WORKDAY_START_HOUR"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        origins = os.getenv("CORS_ORIGINS")
        if origins:
            values["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        return cls(**{k: v for k, v in values.items() if v is not None})
