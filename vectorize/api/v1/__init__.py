"""V1 API router aggregation."""

from fastapi import APIRouter

from vectorize.api.v1.search import router as search_router
from vectorize.api.v1.system import router as system_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(search_router)
v1_router.include_router(system_router)
