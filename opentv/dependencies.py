"""FastAPI dependencies: services created in the app lifespan and kept on app.state."""
from typing import Optional

from fastapi import HTTPException, Request

from opentv.services.catalog import CatalogStore
from opentv.services.probe_scheduler import ProbeScheduler
from opentv.services.query_engine import QueryEngine


def get_catalog(request: Request) -> CatalogStore:
    return request.app.state.catalog


def get_engine(request: Request) -> QueryEngine:
    return request.app.state.engine


def get_scheduler(request: Request) -> ProbeScheduler:
    scheduler: Optional[ProbeScheduler] = request.app.state.scheduler
    if scheduler is None or not scheduler.active:
        raise HTTPException(status_code=409, detail="Stream probing is disabled")
    return scheduler
