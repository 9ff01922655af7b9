"""Database source — table schemas and configuration rows rendered as SQL chunks."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any

from sqlalchemy import inspect, literal_column, select, table
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from vectorize.core.config import ConfigTable, DatabaseConfig
from vectorize.core.database import database_engine, resolve_connection
from vectorize.models.chunk import Chunk, ChunkKind

logger = logging.getLogger(__name__)

# sampleRows: "all" still caps the rows read
ALL_ROWS_LIMIT = 10_000

SYSTEM_SCHEMAS = frozenset({
    "information_schema",
    "pg_catalog",
    "pg_toast",
    "mysql",
    "performance_schema",
    "sys",
})


@dataclass
class TableSchema:
    """Reflected structure of one table."""
    schema: str
    name: str
    columns: list[dict[str, Any]] = field(default_factory=list)
    foreign_keys: list[dict[str, Any]] = field(default_factory=list)
    indexes: list[dict[str, Any]] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass
class DatabaseExtract:
    chunks: list[Chunk] = field(default_factory=list)
    tables: int = 0
    config_tables: list[str] = field(default_factory=list)


def table_matches(key: str, include: list[str], exclude: list[str]) -> bool:
    if any(fnmatchcase(key, pattern) for pattern in exclude):
        return False
    return any(fnmatchcase(key, pattern) for pattern in include)


def format_table_ddl(table_schema: TableSchema) -> str:
    """Render a reflected table as a ``CREATE TABLE`` block."""
    lines = [f"CREATE TABLE {table_schema.name} ("]
    columns = table_schema.columns
    foreign_keys = table_schema.foreign_keys

    for i, column in enumerate(columns):
        line = f"  {column['name']} {column['type']}"
        if not column.get("nullable", True):
            line += " NOT NULL"
        if column.get("default") is not None:
            line += f" DEFAULT {column['default']}"
        if i < len(columns) - 1 or foreign_keys:
            line += ","
        if column.get("comment"):
            line += f" -- {column['comment']}"
        lines.append(line)

    for i, fk in enumerate(foreign_keys):
        line = (
            f"  FOREIGN KEY ({', '.join(fk['constrained_columns'])}) "
            f"REFERENCES {fk['referred_table']}({', '.join(fk['referred_columns'])})"
        )
        if i < len(foreign_keys) - 1:
            line += ","
        lines.append(line)

    lines.append(");")

    for index in table_schema.indexes:
        unique = "UNIQUE " if index.get("unique") else ""
        columns_sql = ", ".join(c for c in index.get("column_names", []) if c)
        lines.append(f"-- {unique}INDEX {index.get('name')} ON {table_schema.name} ({columns_sql})")

    return "\n".join(lines)


def format_sql_value(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list)):
        value = json.dumps(value, default=str)
    return "'" + str(value).replace("'", "''") + "'"


def format_config_rows(table_name: str, columns: list[str], rows: list[tuple]) -> str:
    """Render rows as ``INSERT`` statements under a short header."""
    if not rows:
        return f"-- Table {table_name} is empty"
    lines = [
        f"-- Configuration data from {table_name}",
        f"-- Columns: {', '.join(columns)}",
        "",
    ]
    column_sql = ", ".join(columns)
    for row in rows:
        values = ", ".join(format_sql_value(v) for v in row)
        lines.append(f"INSERT INTO {table_name} ({column_sql}) VALUES ({values});")
    return "\n".join(lines)


def _reflect_tables(sync_conn: Connection, include: list[str], exclude: list[str]) -> list[TableSchema]:
    inspector = inspect(sync_conn)
    dialect = sync_conn.dialect
    tables: list[TableSchema] = []

    for schema in inspector.get_schema_names():
        if schema in SYSTEM_SCHEMAS:
            continue
        for name in inspector.get_table_names(schema=schema):
            reflected = TableSchema(schema=schema, name=name)
            if not table_matches(reflected.key, include, exclude):
                continue
            for column in inspector.get_columns(name, schema=schema):
                reflected.columns.append({
                    "name": column["name"],
                    "type": column["type"].compile(dialect=dialect),
                    "nullable": column.get("nullable", True),
                    "default": column.get("default"),
                    "comment": column.get("comment"),
                })
            reflected.foreign_keys = [
                fk for fk in inspector.get_foreign_keys(name, schema=schema)
                if fk.get("referred_table")
            ]
            reflected.indexes = inspector.get_indexes(name, schema=schema)
            tables.append(reflected)

    return tables


def schema_chunk(table_schema: TableSchema) -> Chunk:
    ddl = format_table_ddl(table_schema)
    return Chunk.create(
        content=ddl,
        file_path=f"database:{table_schema.schema}/{table_schema.name}",
        start_line=1,
        end_line=len(ddl.split("\n")),
        language="sql",
        kind=ChunkKind.SCHEMA,
        context=f"Database table {table_schema.name} with {len(table_schema.columns)} columns",
    )


async def _fetch_config_rows(conn: AsyncConnection, config_table: ConfigTable) -> tuple[list[str], list[tuple]]:
    limit = ALL_ROWS_LIMIT if config_table.sample_rows == "all" else config_table.sample_rows
    schema, _, name = config_table.table.rpartition(".")
    stmt = select(literal_column("*")).select_from(table(name, schema=schema or None)).limit(limit)
    result = await conn.execute(stmt)
    return list(result.keys()), [tuple(row) for row in result.fetchall()]


async def extract_database_chunks(config: DatabaseConfig) -> DatabaseExtract:
    """Reflect the configured database into schema and config-table chunks.

    Returns an empty extract when database indexing is disabled or the
    connection does not resolve. A failing config table is logged and skipped;
    a failing connection or reflection propagates.
    """
    extract = DatabaseExtract()
    if not config.enabled:
        return extract
    url = resolve_connection(config)
    if not url:
        logger.warning("Database indexing enabled but the connection does not resolve; skipping")
        return extract

    async with database_engine(url, config.type) as engine:
        async with engine.connect() as conn:
            if config.schema_config.enabled:
                tables = await conn.run_sync(
                    _reflect_tables,
                    config.schema_config.include,
                    config.schema_config.exclude,
                )
                extract.tables = len(tables)
                extract.chunks.extend(schema_chunk(t) for t in tables)

            for config_table in config.config_tables:
                try:
                    columns, rows = await _fetch_config_rows(conn, config_table)
                except SQLAlchemyError as exc:
                    logger.warning("Failed to read config table %s: %s", config_table.table, exc)
                    await conn.rollback()
                    continue
                if not rows:
                    continue
                extract.chunks.append(Chunk.create(
                    content=format_config_rows(config_table.table, columns, rows),
                    file_path=f"database:{config_table.table}",
                    start_line=1,
                    end_line=len(rows),
                    language="sql",
                    kind=ChunkKind.CONFIG,
                    context=config_table.description or f"Configuration data from {config_table.table}",
                ))
                extract.config_tables.append(config_table.table)

    logger.info(
        "Extracted %d database chunks (%d tables, %d config tables)",
        len(extract.chunks), extract.tables, len(extract.config_tables),
    )
    return extract
