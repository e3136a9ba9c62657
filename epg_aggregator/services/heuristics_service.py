"""
Duration Heuristics Store

Remembers, per source URL, the last downloaded byte size and the last parse
duration so the next run can estimate progress before any data arrives.
Values are cosmetic: a failed read or write only costs progress accuracy.
"""
import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from epg_aggregator import database
from epg_aggregator.models import SourceHeuristics
from epg_aggregator.services.fetch_types import SourceDescriptor
from epg_aggregator.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)


async def get_source_heuristics(db: AsyncSession, urls: Sequence[str]) -> dict[str, SourceHeuristics]:
    """
    Load stored heuristics for the given URLs.

    Args:
        db: Database session
        urls: Source URLs

    Returns:
        Mapping of URL to its row; URLs never seen before are absent
    """
    if not urls:
        return {}
    result = await db.execute(
        select(SourceHeuristics).where(SourceHeuristics.source_url.in_(list(urls)))
    )
    return {row.source_url: row for row in result.scalars().all()}


async def upsert_source_heuristics(db: AsyncSession, url: str, **values) -> None:
    """
    Insert or update one URL's heuristics, touching only the given columns.

    Args:
        db: Database session
        url: Source URL
        values: last_byte_size and/or last_parse_duration_seconds
    """
    now = datetime.now(timezone.utc)
    stmt = sqlite_insert(SourceHeuristics).values(
        source_url=url,
        updated_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SourceHeuristics.source_url],
        set_={**values, "updated_at": now},
    )
    await db.execute(stmt)


class DurationHeuristicsStore:
    """
    Pipeline-facing facade over the heuristics table.

    Never raises on storage problems; when the database is unavailable it
    behaves like an empty store.
    """

    def __init__(self, default_parse_duration_seconds: float = 20.0):
        self.default_parse_duration_seconds = default_parse_duration_seconds

    async def describe_sources(self, urls: Sequence[str]) -> list[SourceDescriptor]:
        """Build descriptors for URLs, filling in what was observed last time."""
        known: dict[str, SourceHeuristics] = {}
        if database.is_initialized():
            try:
                async with database.session_scope() as session:
                    known = await get_source_heuristics(session, urls)
            except SQLAlchemyError as exc:
                logger.warning("Could not read source heuristics, using defaults: %s", exc)
        else:
            logger.debug("Heuristics database not initialized; using defaults")

        descriptors = []
        for url in urls:
            row = known.get(url)
            size = row.last_byte_size if row and row.last_byte_size and row.last_byte_size > 0 else None
            duration = (
                row.last_parse_duration_seconds
                if row and row.last_parse_duration_seconds and row.last_parse_duration_seconds > 0
                else self.default_parse_duration_seconds
            )
            descriptors.append(
                SourceDescriptor(
                    url=url,
                    expected_byte_size=size,
                    expected_parse_duration_seconds=duration,
                )
            )
        return descriptors

    async def record_byte_size(self, url: str, byte_size: int) -> None:
        if byte_size <= 0:
            return
        await self._write(url, last_byte_size=byte_size)

    async def record_parse_duration(self, url: str, seconds: float) -> None:
        if seconds <= 0:
            return
        await self._write(url, last_parse_duration_seconds=seconds)

    async def _write(self, url: str, **values) -> None:
        if not database.is_initialized():
            logger.debug("Heuristics database not initialized; dropping %s", list(values))
            return
        try:
            async with database.session_scope() as session:
                await upsert_source_heuristics(session, url, **values)
        except SQLAlchemyError as exc:
            logger.warning(
                "Could not store heuristics for %s: %s",
                sanitize_url(url),
                exc,
            )
