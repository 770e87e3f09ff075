"""
Database Schemas for the Focus Dial Time Tracker

Each Pydantic model maps to a MongoDB collection with the lowercase class name.
"""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

HEX_COLOR = r"^#(?:[0-9a-fA-F]{3}){1,2}$"


class Project(BaseModel):
    user_id: str = Field(..., description="Owner of the project")
    name: str = Field(..., min_length=1, description="Project name")
    color: str = Field(..., pattern=HEX_COLOR, description="Hex color, e.g. '#FF8800'")
    device_project_id: Optional[str] = Field(None, description="External id sent by the Focus Dial; omitted when absent")


class TimeEntry(BaseModel):
    user_id: str = Field(..., description="Owner of the entry")
    project_id: str = Field(..., description="Reference to project _id as string")
    start_time: datetime = Field(..., description="Start instant (UTC)")
    end_time: Optional[datetime] = Field(None, description="End instant (UTC); null means running")
    duration: Optional[int] = Field(None, ge=0, description="Seconds between start and end, set when stopped")
    description: Optional[str] = Field(None, description="What was worked on")


class ApiKey(BaseModel):
    user_id: str = Field(..., description="User the key authenticates as")
    key_name: str = Field(..., min_length=1, description="Label shown in the key list")
    key_hash: str = Field(..., description="SHA-256 hex digest of the raw key")
    last_used_at: Optional[datetime] = Field(None, description="Last successful authentication")


class Settings(BaseModel):
    theme: str = Field("system", description="light | dark | system")
    timezone: str = Field("UTC", description="IANA timezone string, e.g., 'America/Los_Angeles'")
    language: str = Field("en", description="ISO language code")
    date_format: str = Field("yyyy-MM-dd", description="Date display format")
