"""System routes: health."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from apprunner import __version__

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    db: bool
    online: int = 0
    building: list[str] = []


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check. Returns DB status, online count and running builds."""
    db = getattr(request.app.state, "db", None)
    builder = getattr(request.app.state, "builder", None)
    return HealthResponse(
        status="ok",
        version=__version__,
        db=db is not None,
        online=db.online_count() if db is not None else 0,
        building=builder.in_flight if builder is not None else [],
    )
