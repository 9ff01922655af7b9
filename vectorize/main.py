"""FastAPI application entrypoint."""

from fastapi import FastAPI

from vectorize import __version__
from vectorize.api.v1 import v1_router

app = FastAPI(
    title="Vectorize",
    version=__version__,
    description="Local hybrid semantic search over a project's code, docs and database schema",
)

# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok"}
