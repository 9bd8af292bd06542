"""
Metadata models for categories, countries, languages and catalog sync status.
"""
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional


class Category(BaseModel):
    """Channel category model."""
    id: str
    name: str
    channel_count: int = 0  # Computed field


class Country(BaseModel):
    """Country model with channel count."""
    code: str
    name: str
    flag: str = ""
    languages: list[str] = Field(default_factory=list)
    channel_count: int = 0  # Computed field


class Language(BaseModel):
    """Language model."""
    code: str
    name: str


class SyncStatus(BaseModel):
    """Outcome of the last upstream catalog sync."""
    last_sync_at: datetime
    status: str
    channel_count: Optional[int] = None
    error: Optional[str] = None
