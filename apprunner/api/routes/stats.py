"""Stats routes: snapshot, launch counter, ratings, session listing.

Mutations return as soon as the write is committed; the realtime push to
connected clients happens in the background.
"""

from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from apprunner.web.database import Session, StatsSnapshot

router = APIRouter()


# --- Pydantic v2 request/response models ---

class RateRequest(BaseModel):
    # Range and type are checked by the store so errors share one format
    rating: Any


class LaunchResponse(BaseModel):
    success: bool
    launches: int


class RateResponse(BaseModel):
    success: bool
    rating_count: int = Field(serialization_alias="ratingCount")


# --- Helpers ---

def _get_db(request: Request):
    """Get database from app state."""
    return request.app.state.db


# --- Routes ---

@router.get("/stats", response_model=StatsSnapshot)
async def get_stats(request: Request):
    """Launch counts, rating summaries and online count."""
    return _get_db(request).snapshot()


@router.post("/launch/{project_id}", response_model=LaunchResponse)
async def record_launch(project_id: str, request: Request):
    count = _get_db(request).record_launch(project_id)
    return LaunchResponse(success=True, launches=count)


@router.post("/rate/{project_id}", response_model=RateResponse)
async def record_rating(project_id: str, body: RateRequest, request: Request):
    """Append a 0-5 rating sample for a project."""
    count = _get_db(request).record_rating(project_id, body.rating)
    return RateResponse(success=True, rating_count=count)


@router.get("/sessions", response_model=list[Session])
async def list_sessions(request: Request, limit: int = Query(default=100, ge=1, le=500)):
    """Recent realtime sessions, most recent first (diagnostics)."""
    return _get_db(request).list_sessions(limit=limit)
