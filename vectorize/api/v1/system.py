"""Index status and effective configuration endpoints."""

from typing import Any

from fastapi import APIRouter

from vectorize.api.deps import AppSettings, ProjectConfig
from vectorize.core.index import open_index
from vectorize.models.metadata import StatusReport
from vectorize.workers.refresh import collect_status

router = APIRouter(tags=["system"])


@router.get("/status", response_model=StatusReport)
async def index_status(settings: AppSettings, config: ProjectConfig) -> StatusReport:
    async with open_index(settings.project_root, settings) as handle:
        return collect_status(handle, config.refresh.max_age_delta)


@router.get("/config")
async def effective_config(config: ProjectConfig) -> dict[str, Any]:
    """Effective vectorization config; credentials appear only as env references."""
    return config.dump()
