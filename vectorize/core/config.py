"""Engine settings (environment) and the project manifest's ``vectorization`` section."""

from __future__ import annotations

import json
import os
import re
from datetime import timedelta
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from vectorize.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VECTORIZE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Project ───────────────────────────────────────────
    project_root: Path = Field(default_factory=Path.cwd)
    index_dir_name: str = ".vectorindex"
    log_level: str = "INFO"

    # ── Embedding ─────────────────────────────────────────
    embedding_batch_timeout: float = 60.0
    embedding_concurrency: int = 4
    max_embedding_chars: int = 30_000
    ollama_base_url: str = "http://localhost:11434"

    # ── Retry ─────────────────────────────────────────────
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0

    # ── Indexing ──────────────────────────────────────────
    chunk_workers: int = 4
    refresh_timeout: float = 1800.0

    # ── Contextual retrieval ──────────────────────────────
    contextual_model: str = "claude-3-haiku-20240307"
    contextual_concurrency: int = 4


@lru_cache
def get_settings() -> Settings:
    return Settings()


# ── Project manifest ──────────────────────────────────────────

DEFAULT_INCLUDE = ["src/**", "lib/**", "app/**", "docs/**"]
DEFAULT_EXCLUDE = [
    "node_modules/**",
    "dist/**",
    "build/**",
    ".git/**",
    "*.test.ts",
    "*.spec.ts",
]

_MAX_AGE_RE = re.compile(r"^(\d+)(h|d|w)$")
_MAX_AGE_UNITS = {"h": "hours", "d": "days", "w": "weeks"}


def parse_max_age(value: str) -> timedelta:
    """Parse ``"24h"``, ``"7d"`` or ``"2w"`` into a timedelta."""
    match = _MAX_AGE_RE.match(value.strip())
    if not match:
        raise ConfigurationError(f"Invalid maxAge {value!r}; expected <number><h|d|w>")
    amount, unit = int(match.group(1)), match.group(2)
    return timedelta(**{_MAX_AGE_UNITS[unit]: amount})


def validate_glob(pattern: str) -> str:
    """Reject include/exclude patterns that can never match a project-relative path."""
    if not pattern or not pattern.strip():
        raise ConfigurationError("Empty glob pattern")
    if pattern.startswith("/") or re.match(r"^[A-Za-z]:[\\/]", pattern):
        raise ConfigurationError(f"Glob pattern must be relative to the project root: {pattern!r}")
    if ".." in PurePosixPath(pattern).parts:
        raise ConfigurationError(f"Glob pattern must not leave the project root: {pattern!r}")
    return pattern


def resolve_credential(reference: str | None) -> str | None:
    """Resolve an ``env:NAME`` reference. Literal secrets are refused."""
    if not reference:
        return None
    if not reference.startswith("env:"):
        raise ConfigurationError(
            "Credentials must be referenced indirectly (e.g. \"env:OPENAI_API_KEY\"), "
            "literal values are not accepted"
        )
    return os.environ.get(reference[4:]) or None


class _ManifestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CodebaseConfig(_ManifestModel):
    include: list[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE))
    exclude: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE))
    chunk_strategy: Literal["ast", "sliding-window"] = "ast"

    @field_validator("include", "exclude")
    @classmethod
    def _check_globs(cls, patterns: list[str]) -> list[str]:
        for pattern in patterns:
            try:
                validate_glob(pattern)
            except ConfigurationError as exc:
                raise ValueError(str(exc)) from exc
        return patterns


class SchemaConfig(_ManifestModel):
    enabled: bool = True
    include: list[str] = Field(default_factory=lambda: ["*.*"])
    exclude: list[str] = Field(default_factory=list)


class ConfigTable(_ManifestModel):
    table: str
    description: str | None = None
    sample_rows: int | Literal["all"] = 100


class DatabaseConfig(_ManifestModel):
    enabled: bool = False
    connection: str | None = None
    type: Literal["postgres", "mysql", "sqlite"] | None = None
    schema_config: SchemaConfig = Field(default_factory=SchemaConfig, alias="schema")
    config_tables: list[ConfigTable] = Field(default_factory=list)


class RerankingConfig(_ManifestModel):
    enabled: bool = False
    model: str = "cohere"


class SearchConfig(_ManifestModel):
    hybrid_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    top_k: int = Field(default=20, ge=1, le=100)
    reranking: RerankingConfig | None = None


class RefreshConfig(_ManifestModel):
    on_git_change: bool = True
    on_session_start: bool = True
    max_age: str = "24h"

    @field_validator("max_age")
    @classmethod
    def _check_max_age(cls, value: str) -> str:
        try:
            parse_max_age(value)
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc
        return value

    @property
    def max_age_delta(self) -> timedelta:
        return parse_max_age(self.max_age)


class CredentialsConfig(_ManifestModel):
    openai: str | None = "env:OPENAI_API_KEY"
    anthropic: str | None = "env:ANTHROPIC_API_KEY"
    voyage: str | None = "env:VOYAGE_API_KEY"
    cohere: str | None = "env:COHERE_API_KEY"

    @field_validator("openai", "anthropic", "voyage", "cohere")
    @classmethod
    def _indirect_only(cls, value: str | None) -> str | None:
        if value is not None and not value.startswith("env:"):
            raise ValueError("credentials must be env: references")
        return value


class VectorizationConfig(_ManifestModel):
    enabled: bool = True
    storage: Literal["local", "cloud"] = "local"
    embedding_model: Literal["auto", "openai", "voyage", "ollama"] = "auto"
    contextual_retrieval: Literal["auto", "always", "never"] = "auto"
    codebase: CodebaseConfig = Field(default_factory=CodebaseConfig)
    database: DatabaseConfig | None = None
    search: SearchConfig = Field(default_factory=SearchConfig)
    refresh: RefreshConfig = Field(default_factory=RefreshConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)

    def dump(self) -> dict[str, Any]:
        """Manifest representation (camelCase keys, unset optionals omitted)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def manifest_path(project_root: Path) -> Path:
    """``docs/project.json``, or ``project.json`` at the root when only that exists."""
    docs_path = project_root / "docs" / "project.json"
    root_path = project_root / "project.json"
    if not docs_path.exists() and root_path.exists():
        return root_path
    return docs_path


def load_project_manifest(project_root: Path) -> dict[str, Any]:
    path = manifest_path(project_root)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    return data


def parse_vectorization_config(raw: dict[str, Any]) -> VectorizationConfig:
    try:
        return VectorizationConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid vectorization config: {exc}") from exc


def load_vectorization_config(project_root: Path) -> VectorizationConfig | None:
    """Return the manifest's vectorization section, or ``None`` if it has none."""
    raw = load_project_manifest(project_root).get("vectorization")
    if raw is None:
        return None
    return parse_vectorization_config(raw)


def save_vectorization_config(project_root: Path, config: VectorizationConfig) -> Path:
    """Write the vectorization section back into the manifest, preserving other keys."""
    manifest = load_project_manifest(project_root)
    manifest["vectorization"] = config.dump()
    path = manifest_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")
    return path
