"""
Channel, Stream, and listing query models.
Maps to the iptv-org API schema as stored in the catalog.
"""
from enum import Enum
from pydantic import BaseModel, Field, computed_field, field_validator
from typing import Optional


class Channel(BaseModel):
    """TV channel as stored in the catalog."""
    channel_id: str
    name: str
    logo: Optional[str] = None
    country: str
    categories: list[str] = Field(default_factory=list)
    network: Optional[str] = None

    # Store-assigned creation order, used for stable pagination
    seq: int = Field(default=0, exclude=True)

    @computed_field
    @property
    def primary_category(self) -> Optional[str]:
        """First category tag, for callers that need a single label."""
        return self.categories[0] if self.categories else None


class Stream(BaseModel):
    """Candidate stream URL for a channel."""
    channel_id: str
    url: str
    quality: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None


def _normalize_codes(values, upper: bool) -> list[str]:
    if not values:
        return []
    if isinstance(values, str):
        values = values.split(",")
    cleaned = {v.strip() for v in values if v and v.strip()}
    return sorted(v.upper() if upper else v.lower() for v in cleaned)


class ChannelFilter(BaseModel):
    """Listing query: structured filters, free-text search and a page cursor."""
    countries: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    search: Optional[str] = None
    cursor: Optional[str] = None
    page_size: int = Field(default=20, ge=1)

    @field_validator("countries", mode="before")
    @classmethod
    def _upper_countries(cls, v):
        return _normalize_codes(v, upper=True)

    @field_validator("categories", mode="before")
    @classmethod
    def _lower_categories(cls, v):
        return _normalize_codes(v, upper=False)

    @field_validator("search", "cursor", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def search_text(self) -> Optional[str]:
        return self.search.strip() if self.search else None


class AccessPath(str, Enum):
    """Index path used to serve a listing page."""
    SEARCH = "search"
    CATEGORY_COUNTRY = "category_country"
    CATEGORY = "category"
    COUNTRY_MERGE = "country_merge"
    CATEGORY_MERGE = "category_merge"
    FULL_SCAN = "full_scan"


class ChannelPage(BaseModel):
    """One page of a channel listing."""
    channels: list[Channel]
    cursor: Optional[str] = None
    done: bool = True
    access_path: AccessPath
