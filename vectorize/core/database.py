"""Async database engines for the database source."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from urllib.parse import urlsplit

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from vectorize.core.config import DatabaseConfig, resolve_credential
from vectorize.core.exceptions import ConfigurationError

ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}


def detect_database_type(url: str) -> str:
    scheme = url.split(":", 1)[0].split("+", 1)[0].lower()
    if scheme in ("postgres", "postgresql"):
        return "postgres"
    if scheme in ("mysql", "mariadb"):
        return "mysql"
    if scheme in ("sqlite", "file") or url.endswith((".db", ".sqlite", ".sqlite3")):
        return "sqlite"
    return "postgres"


def resolve_connection(config: DatabaseConfig) -> str | None:
    """The connection URL, read from the environment for ``env:`` references.

    Literal URLs are accepted only when they carry no password.
    """
    connection = config.connection
    if not connection:
        return None
    if connection.startswith("env:"):
        return resolve_credential(connection)
    if "://" in connection and urlsplit(connection).password:
        raise ConfigurationError(
            "Database connection strings with a password must be referenced indirectly "
            "(e.g. \"env:DATABASE_URL\")"
        )
    return connection


def to_async_url(url: str, db_type: str | None = None) -> str:
    """Rewrite a plain connection URL to use the async driver for its dialect."""
    db_type = db_type or detect_database_type(url)
    if "://" in url:
        scheme, rest = url.split("://", 1)
        if "+" in scheme:
            return url
        return f"{ASYNC_DRIVERS[db_type]}://{rest}"
    # Bare sqlite paths: "sqlite:app.db", "file:app.db", "app.db"
    path = url.split(":", 1)[1] if url.startswith(("sqlite:", "file:")) else url
    return f"{ASYNC_DRIVERS['sqlite']}:///{path}"


@asynccontextmanager
async def database_engine(url: str, db_type: str | None = None) -> AsyncGenerator[AsyncEngine, None]:
    """Yield an async engine for the URL, disposed on exit."""
    engine = create_async_engine(to_async_url(url, db_type), echo=False)
    try:
        yield engine
    finally:
        await engine.dispose()
