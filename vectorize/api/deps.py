"""FastAPI dependencies for settings, the project manifest and providers."""

from typing import Annotated

from fastapi import Depends, HTTPException, status

from vectorize.core.config import (
    Settings,
    VectorizationConfig,
    get_settings,
    load_vectorization_config,
)
from vectorize.core.exceptions import ConfigurationError
from vectorize.services.embedding import EmbeddingProvider

AppSettings = Annotated[Settings, Depends(get_settings)]


def get_project_config(settings: AppSettings) -> VectorizationConfig:
    """The manifest's vectorization section, or defaults when it has none."""
    try:
        return load_vectorization_config(settings.project_root) or VectorizationConfig()
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc


def get_embedding_provider() -> EmbeddingProvider | None:
    """Provider override hook; ``None`` selects one from the manifest per request."""
    return None


ProjectConfig = Annotated[VectorizationConfig, Depends(get_project_config)]
Provider = Annotated[EmbeddingProvider | None, Depends(get_embedding_provider)]
