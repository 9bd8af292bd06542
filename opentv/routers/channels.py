"""
Channel discovery API endpoints.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from typing import Optional

from opentv.config import get_settings
from opentv.dependencies import get_catalog, get_engine
from opentv.models.channel import ChannelFilter
from opentv.models.metadata import Category, Country, Language
from opentv.services.catalog import CatalogStore
from opentv.services.query_engine import QueryEngine
from opentv.services.refresh import cache_headers, utcnow

router = APIRouter(prefix="/api", tags=["channels"])


def _set_cache_headers(response: Response):
    response.headers.update(cache_headers(utcnow(), get_settings().refresh_hour_utc))


@router.get("/channels")
async def list_channels(
    response: Response,
    countries: Optional[str] = Query(None, description="Comma-separated country codes (e.g., US,UK)"),
    categories: Optional[str] = Query(None, description="Comma-separated category IDs (e.g., news,sports)"),
    search: Optional[str] = Query(None, description="Search in channel names"),
    cursor: Optional[str] = Query(None, description="Continuation cursor from a previous page"),
    limit: Optional[int] = Query(None, ge=1, description="Results per page"),
    engine: QueryEngine = Depends(get_engine),
):
    """
    List channels with filtering and cursor pagination.

    - **countries**: ISO 3166-1 alpha-2 country codes
    - **categories**: Category IDs from /api/categories
    - **search**: Search term for channel name (single page, no cursor)
    - **cursor**: Opaque token returned by the previous page
    """
    settings = get_settings()
    page_size = min(limit or settings.default_page_size, settings.max_page_size)

    page = await engine.query_channels(ChannelFilter(
        countries=countries,
        categories=categories,
        search=search,
        cursor=cursor,
        page_size=page_size,
    ))
    _set_cache_headers(response)

    return {
        "channels": [ch.model_dump() for ch in page.channels],
        "next_cursor": page.cursor,
        "done": page.done,
        "access_path": page.access_path.value,
    }


@router.get("/channels/{channel_id}")
async def get_channel(channel_id: str, response: Response, engine: QueryEngine = Depends(get_engine)):
    """
    Get channel details with available streams.
    """
    channel = await engine.get_channel(channel_id)
    if not channel:
        raise HTTPException(status_code=404, detail="Channel not found")

    streams = await engine.get_streams(channel_id)
    _set_cache_headers(response)
    return {
        **channel.model_dump(),
        "streams": [s.model_dump() for s in streams],
    }


@router.get("/categories")
async def list_categories(response: Response, catalog: CatalogStore = Depends(get_catalog)):
    """
    List all channel categories with counts.
    """
    categories = await catalog.get_categories()
    _set_cache_headers(response)
    return {"categories": [Category(**c).model_dump() for c in categories]}


@router.get("/countries")
async def list_countries(response: Response, catalog: CatalogStore = Depends(get_catalog)):
    """
    List all countries with channel counts.
    """
    countries = await catalog.get_countries()
    _set_cache_headers(response)
    return {"countries": [Country(**c).model_dump() for c in countries]}


@router.get("/languages")
async def list_languages(response: Response, catalog: CatalogStore = Depends(get_catalog)):
    """
    List all available languages.
    """
    languages = await catalog.get_languages()
    _set_cache_headers(response)
    return {"languages": [Language(**lang).model_dump() for lang in languages]}
