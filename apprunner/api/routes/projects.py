"""Project routes: discovery and on-demand builds."""

import asyncio
import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel

from apprunner.errors import BuildFailed
from apprunner.registry import Project

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Pydantic v2 response models ---

class BuildResponse(BaseModel):
    success: bool
    logs: str


# --- Routes ---

@router.get("/projects", response_model=list[Project])
async def list_projects(request: Request):
    """All project directories under the data dir, rescanned per request."""
    registry = request.app.state.registry
    return await asyncio.to_thread(registry.list)


@router.post("/build/{project_id}", response_model=BuildResponse)
async def build_project(project_id: str, request: Request):
    """Install and build a project; responds when the process has exited.

    409 when the same project is already building.
    """
    builder = request.app.state.builder
    result = await builder.build_async(project_id)
    if not result.ok:
        raise BuildFailed("Build failed", details=result.logs or result.error)
    return BuildResponse(success=True, logs=result.logs)
