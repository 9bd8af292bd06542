"""
Stream probing API endpoints.

Clients submit the channels they are displaying, report which of them are on
screen, and poll the status map to hide or flag dead channels.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from opentv.dependencies import get_scheduler
from opentv.services.probe_scheduler import ProbeScheduler

router = APIRouter(prefix="/api/probe", tags=["probe"])


class ProbeRequest(BaseModel):
    channel_ids: list[str] = Field(default_factory=list, max_length=500)
    visible_ids: list[str] = Field(default_factory=list, max_length=500)


class VisibilityRequest(BaseModel):
    channel_id: str
    visible: bool


def _status_payload(scheduler: ProbeScheduler) -> dict:
    return {
        "statuses": {cid: status.value for cid, status in scheduler.status_by_channel_id.items()},
        "is_any_pending": scheduler.is_any_pending,
        "working_stream_urls": scheduler.working_stream_urls,
    }


@router.post("")
async def submit_channels(request: ProbeRequest, scheduler: ProbeScheduler = Depends(get_scheduler)):
    """
    Replace the list of channels to probe.
    Channels with a fresh cached verdict are resolved immediately.
    """
    await scheduler.submit(request.channel_ids)
    for channel_id in request.visible_ids:
        scheduler.set_visible(channel_id, True)
    return _status_payload(scheduler)


@router.post("/visibility")
async def set_visibility(request: VisibilityRequest, scheduler: ProbeScheduler = Depends(get_scheduler)):
    """Report that a channel scrolled into (or out of) view."""
    scheduler.set_visible(request.channel_id, request.visible)
    return {"channel_id": request.channel_id, "visible": request.visible}


@router.get("/status")
async def get_probe_status(scheduler: ProbeScheduler = Depends(get_scheduler)):
    """
    Get per-channel probe status.
    Used for real-time UI updates via polling.
    """
    return {**_status_payload(scheduler), "scheduler": scheduler.get_stats()}
