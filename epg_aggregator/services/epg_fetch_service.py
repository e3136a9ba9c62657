"""
EPG Fetching Service

Coordinates concurrent downloading and parsing of every source, merges the
results and writes them through the cache.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Sequence

import httpx

from epg_aggregator.config import CustomSettings, settings
from epg_aggregator.services.cache_service import CacheStore
from epg_aggregator.services.epg_downloader_service import FetchOptions, process_single_source
from epg_aggregator.services.fetch_types import (
    FetchResult,
    PartialResult,
    ProgressSink,
    SourceDescriptor,
)
from epg_aggregator.services.heuristics_service import DurationHeuristicsStore
from epg_aggregator.services.progress_service import ProgressAggregator
from epg_aggregator.utils.data_merging import merge_partial_results
from epg_aggregator.utils.logging_helpers import (
    log_fetch_end,
    log_fetch_start,
    log_merge_summary,
    log_source_processing,
    sanitize_url,
)
from epg_aggregator.utils.timezone import resolve_timezone


logger = logging.getLogger(__name__)


def options_from_settings(config: CustomSettings = settings) -> FetchOptions:
    """Translate environment settings into pipeline options."""
    return FetchOptions(
        default_tz=resolve_timezone(config.epg_default_timezone),
        connect_timeout=config.epg_connect_timeout_sec,
        read_timeout=config.epg_read_timeout_sec,
        max_retries=config.epg_download_max_retries,
        backoff_factor=config.epg_download_backoff_factor,
        source_timeout=config.epg_source_timeout_sec or None,
        parse_timeout=config.epg_parse_timeout_sec or None,
        expected_size_fallback=config.epg_expected_size_fallback_bytes,
        expected_parse_duration=config.epg_expected_parse_duration_sec,
        max_decompressed_bytes=config.max_decompressed_bytes,
        tick_interval=config.epg_progress_tick_sec,
        download_share=config.epg_download_share,
        parse_curve_k=config.epg_parse_curve_k,
        scratch_dir=config.scratch_dir,
    )


class EPGFetchPipeline:
    """Runs every source concurrently, then merges and persists the result."""

    def __init__(
        self,
        sources: Sequence[SourceDescriptor | str],
        on_progress: ProgressSink | None = None,
        *,
        heuristics: DurationHeuristicsStore | None = None,
        cache: CacheStore | None = None,
        client: httpx.AsyncClient | None = None,
        options: FetchOptions | None = None,
        deadline_seconds: float | None = None
    ) -> None:
        self.sources = [
            source if isinstance(source, SourceDescriptor) else SourceDescriptor(url=source)
            for source in sources
            if source
        ]
        self.total_sources = len(self.sources)
        self.on_progress = on_progress
        self.heuristics = heuristics
        self.cache = cache
        self.client = client
        self.options = options or FetchOptions()
        self.deadline_seconds = deadline_seconds if deadline_seconds and deadline_seconds > 0 else None

    async def run(self) -> FetchResult:
        if not self.sources:
            logger.warning("No EPG sources configured - returning empty result")
            self._publish_final()
            return FetchResult()

        log_fetch_start(logger, self.total_sources)
        logger.info(
            "Per-source timeout: %s, overall deadline: %s",
            f"{self.options.source_timeout}s" if self.options.source_timeout else "disabled",
            f"{self.deadline_seconds}s" if self.deadline_seconds else "disabled",
        )

        async with ProgressAggregator(self.total_sources, self.on_progress) as aggregator:
            summaries = await self._collect_sources(aggregator)

        schedule, channel_index = merge_partial_results(summaries)
        result = FetchResult(schedule=schedule, channel_index=channel_index, sources=summaries)
        log_merge_summary(logger, len(schedule), len(channel_index), result.total_programs)

        if self.cache is not None:
            if any(summary.status == "success" for summary in summaries):
                await self.cache.save(schedule, channel_index)
            else:
                logger.warning("All sources failed - keeping previous cache")

        log_fetch_end(logger)
        return result

    def _publish_final(self) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(1.0)
        except Exception as exc:
            logger.warning("Progress sink raised %s; continuing", exc, exc_info=True)

    async def _collect_sources(self, aggregator: ProgressAggregator) -> list[PartialResult]:
        started_at = datetime.now(timezone.utc)
        tasks = {
            asyncio.create_task(
                self._process_source(index, descriptor, aggregator),
                name=f"epg-source-{index}",
            ): (index, descriptor)
            for index, descriptor in enumerate(self.sources, start=1)
        }

        try:
            _, pending = await asyncio.wait(list(tasks), timeout=self.deadline_seconds)
        except asyncio.CancelledError:
            logger.warning("EPG fetch cancelled - stopping %s source task(s)", len(tasks))
            aggregator.cancel()
            for task in tasks:
                task.cancel()
            await asyncio.wait(list(tasks))
            raise

        summaries: list[PartialResult] = []
        if pending:
            logger.warning(
                "Overall fetch deadline of %ss reached - abandoning %s source(s)",
                self.deadline_seconds,
                len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.wait(pending)
            for task in pending:
                if not task.cancelled():
                    # finished between the deadline and the cancel request
                    summaries.append(task.result())
                    continue
                index, descriptor = tasks[task]
                aggregator.report(index, 1.0)
                summaries.append(
                    PartialResult(
                        index=index,
                        url=descriptor.url,
                        sanitized_url=sanitize_url(descriptor.url),
                        started_at=started_at,
                        completed_at=datetime.now(timezone.utc),
                        status="failed",
                        error="Overall fetch deadline exceeded",
                    )
                )

        summaries.extend(task.result() for task in tasks if task not in pending)
        summaries.sort(key=lambda summary: summary.index)
        return summaries

    async def _process_source(
        self,
        index: int,
        descriptor: SourceDescriptor,
        aggregator: ProgressAggregator
    ) -> PartialResult:
        sanitized_url = sanitize_url(descriptor.url)
        started_at = datetime.now(timezone.utc)
        log_source_processing(logger, index, self.total_sources, descriptor.url)

        try:
            outcome = await asyncio.wait_for(
                process_single_source(
                    descriptor,
                    index,
                    aggregator.reporter(index),
                    options=self.options,
                    heuristics=self.heuristics,
                    client=self.client,
                ),
                timeout=self.options.source_timeout,
            )
        except Exception as exc:
            completed_at = datetime.now(timezone.utc)
            error = str(exc) or type(exc).__name__
            logger.error(
                "[Source %s] Failed to process %s: %s",
                index,
                sanitized_url,
                error,
                exc_info=True,
            )
            # a failed source is finished as far as progress is concerned
            aggregator.report(index, 1.0)
            return PartialResult(
                index=index,
                url=descriptor.url,
                sanitized_url=sanitized_url,
                started_at=started_at,
                completed_at=completed_at,
                status="failed",
                error=error,
            )

        completed_at = datetime.now(timezone.utc)
        logger.info(
            "[Source %s/%s] Completed: %s (%s channels, %s names)",
            index,
            self.total_sources,
            sanitized_url,
            len(outcome.schedule),
            len(outcome.channel_index),
        )
        return PartialResult(
            index=index,
            url=descriptor.url,
            sanitized_url=sanitized_url,
            started_at=started_at,
            completed_at=completed_at,
            status="success",
            schedule=outcome.schedule,
            channel_index=outcome.channel_index,
            byte_size=outcome.byte_size,
            parse_duration_seconds=outcome.parse_duration_seconds,
        )


async def fetch_and_merge(
    sources: Sequence[SourceDescriptor | str],
    on_progress: ProgressSink | None = None,
    *,
    heuristics: DurationHeuristicsStore | None = None,
    cache: CacheStore | None = None,
    client: httpx.AsyncClient | None = None,
    options: FetchOptions | None = None,
    deadline_seconds: float | None = None
) -> FetchResult:
    """
    Fetch every source concurrently and return the merged schedule.

    Failed sources contribute nothing and never raise. With no sources the
    call returns immediately, performs no I/O and reports 1.0 once.
    Cancelling the awaiting task stops all source work, silences on_progress
    and skips the cache write.

    Args:
        sources: Descriptors (or bare URLs) in priority order
        on_progress: Receives the overall fraction in [0, 1], never decreasing

    Keyword Args:
        heuristics: Store for observed sizes and parse durations
        cache: Where the merged result is written after at least one source succeeds
        client: Shared HTTP client
        options: Timeouts and progress model (defaults when None)
        deadline_seconds: Optional limit for the whole operation

    Returns:
        FetchResult, which also unpacks as (schedule, channel_index)
    """
    pipeline = EPGFetchPipeline(
        sources,
        on_progress,
        heuristics=heuristics,
        cache=cache,
        client=client,
        options=options,
        deadline_seconds=deadline_seconds,
    )
    return await pipeline.run()


async def refresh_from_settings(
    on_progress: ProgressSink | None = None,
    *,
    config: CustomSettings = settings
) -> FetchResult:
    """
    Run fetch_and_merge for the configured sources.

    Descriptors are enriched from the heuristics store and the merged result
    is written to the configured cache file.
    """
    heuristics = DurationHeuristicsStore(config.epg_expected_parse_duration_sec)
    descriptors = await heuristics.describe_sources(config.epg_sources or [])
    return await fetch_and_merge(
        descriptors,
        on_progress,
        heuristics=heuristics,
        cache=CacheStore(config.cache_path),
        options=options_from_settings(config),
        deadline_seconds=config.epg_fetch_deadline_sec or None,
    )
