"""Staleness checks and status reporting."""

from __future__ import annotations

import logging
import warnings
from datetime import datetime, timedelta

from vectorize.core.exceptions import StaleIndexWarning
from vectorize.core.index import IndexHandle
from vectorize.models.base import utcnow
from vectorize.models.metadata import IndexMetadata, IndexState, StatusReport
from vectorize.models.search import IndexStatus
from vectorize.workers.ingest import BuildResult, IncrementalIndexer

logger = logging.getLogger(__name__)

__all__ = [
    "check_staleness",
    "collect_status",
    "format_age",
    "index_age",
    "index_status",
    "refresh_if_stale",
]


def index_age(metadata: IndexMetadata, now: datetime | None = None) -> timedelta:
    return (now or utcnow()) - metadata.last_updated


def check_staleness(
    metadata: IndexMetadata,
    max_age: timedelta,
    now: datetime | None = None,
) -> bool:
    """True when the index is older than ``max_age``; also emits a StaleIndexWarning."""
    age = index_age(metadata, now)
    if age <= max_age:
        return False
    warnings.warn(
        f"Index last refreshed {format_age(age)} ago (max age {format_age(max_age)})",
        StaleIndexWarning,
        stacklevel=2,
    )
    return True


def index_status(
    metadata: IndexMetadata | None,
    max_age: timedelta,
    now: datetime | None = None,
) -> IndexStatus:
    """Status as reported to callers; staleness is data, never an error."""
    if metadata is None:
        return IndexStatus.MISSING
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", StaleIndexWarning)
        stale = check_staleness(metadata, max_age, now)
    return IndexStatus.STALE if stale else IndexStatus.FRESH


async def refresh_if_stale(
    indexer: IncrementalIndexer,
    max_age: timedelta,
    now: datetime | None = None,
) -> BuildResult | None:
    """Run an incremental refresh only when the committed index is stale.

    Returns ``None`` when the index is fresh (or missing; building is ``init``'s job).
    """
    metadata = indexer.handle.read_metadata()
    if metadata is None:
        logger.info("No index to refresh at %s", indexer.handle.root)
        return None
    if index_status(metadata, max_age, now) is not IndexStatus.STALE:
        logger.debug("Index is fresh, skipping refresh")
        return None
    logger.info("Index is stale, refreshing")
    return await indexer.refresh()


def format_age(age: timedelta) -> str:
    """Compact human-readable duration, e.g. ``3d 4h`` or ``12m``."""
    seconds = int(age.total_seconds())
    if seconds < 0:
        seconds = 0
    days, rem = divmod(seconds, 86_400)
    hours, rem = divmod(rem, 3_600)
    minutes = rem // 60
    if days:
        return f"{days}d {hours}h" if hours else f"{days}d"
    if hours:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    return f"{minutes}m"


def collect_status(handle: IndexHandle, max_age: timedelta, now: datetime | None = None) -> StatusReport:
    """Status of the committed index, including while a refresh is running."""
    metadata = handle.read_metadata()
    if metadata is None:
        state = IndexState.INITIALIZING if handle.is_locked() else IndexState.UNINITIALIZED
    else:
        state = IndexState.REFRESHING if handle.is_locked() else IndexState.READY

    report = StatusReport(
        status=index_status(metadata, max_age, now).value,
        state=state,
        index_dir=str(handle.root),
        max_age=format_age(max_age),
        storage_bytes=handle.storage_size(),
    )
    if metadata is not None:
        report.generation = metadata.generation
        report.last_updated = metadata.last_updated
        report.index_age = format_age(index_age(metadata, now))
        report.git_head = metadata.git_head
        report.codebase = metadata.codebase
        report.database = metadata.database
        report.config = metadata.config
    return report
