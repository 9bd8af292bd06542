"""
Stream listing API endpoints.
"""
from fastapi import APIRouter, Depends, Response

from opentv.config import get_settings
from opentv.dependencies import get_engine
from opentv.services.query_engine import QueryEngine
from opentv.services.refresh import cache_headers, utcnow

router = APIRouter(prefix="/api/streams", tags=["streams"])


@router.get("/{channel_id}")
async def get_channel_streams(channel_id: str, response: Response, engine: QueryEngine = Depends(get_engine)):
    """
    List candidate streams for a channel, in probing order.
    An unknown channel simply has no streams.
    """
    streams = await engine.get_streams(channel_id)
    response.headers.update(cache_headers(utcnow(), get_settings().refresh_hour_utc))
    return {
        "channel_id": channel_id,
        "streams": [s.model_dump() for s in streams],
        "count": len(streams),
    }
