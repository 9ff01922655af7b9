"""Search endpoint — the semantic_search tool over HTTP."""

import logging

from fastapi import APIRouter, HTTPException, status

from vectorize.api.deps import AppSettings, ProjectConfig, Provider
from vectorize.core.exceptions import ConfigurationError, IndexBusyError, ProviderError
from vectorize.models.search import SemanticSearchInput, SemanticSearchOutput
from vectorize.services.tool import semantic_search, tool_definition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["search"])


@router.post("", response_model=SemanticSearchOutput)
async def search(
    body: SemanticSearchInput,
    settings: AppSettings,
    config: ProjectConfig,
    provider: Provider,
) -> SemanticSearchOutput:
    """Hybrid search over the project's index. A missing index is not an error."""
    try:
        return await semantic_search(
            body,
            settings.project_root,
            settings=settings,
            config=config,
            provider=provider,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except IndexBusyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ProviderError as exc:
        logger.exception("Search failed")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.get("/tool")
async def search_tool() -> dict:
    """Tool definition for agent registration."""
    return tool_definition()
