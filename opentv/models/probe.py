"""
Stream probing models.
"""
from enum import Enum
from typing import Literal
from pydantic import AwareDatetime, BaseModel, Field


class ProbeStatus(str, Enum):
    """Per-channel liveness state: pending -> probing -> working | failed."""
    PENDING = "pending"
    PROBING = "probing"
    WORKING = "working"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProbeStatus.WORKING, ProbeStatus.FAILED)


class ProbeCacheEntry(BaseModel):
    """Last known liveness verdict for a channel."""
    status: Literal["working", "failed"]
    working_stream_urls: list[str] = Field(default_factory=list)
    timestamp: AwareDatetime


class ProbeResult(BaseModel):
    """Outcome of probing a channel's candidate streams."""
    has_working: bool
    working_stream_urls: list[str] = Field(default_factory=list)
