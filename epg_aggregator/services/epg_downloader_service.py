"""
EPG Downloader Service

Runs one source through download, decompression and parsing while feeding
its progress to the aggregator. Separated from orchestration logic for
better testability.
"""
import asyncio
import functools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Callable

import httpx

from epg_aggregator.services.fetch_types import ChannelNameIndex, Schedule, SourceDescriptor
from epg_aggregator.services.heuristics_service import DurationHeuristicsStore
from epg_aggregator.services.progress_service import ParseProgressTicker, composite_fraction
from epg_aggregator.services.xmltv_parser_service import parse_xmltv_file
from epg_aggregator.utils.file_operations import (
    cleanup_temp_file,
    download_source,
    make_scratch_path,
    prepare_payload,
)
from epg_aggregator.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FetchOptions:
    """Tunables for a fetch run; see CustomSettings for the env-driven values."""
    default_tz: tzinfo = timezone.utc
    connect_timeout: float = 30.0
    read_timeout: float = 60.0
    max_retries: int = 3
    backoff_factor: float = 2.0
    source_timeout: float | None = None
    parse_timeout: float | None = None
    expected_size_fallback: int = 10_000_000
    expected_parse_duration: float = 20.0
    max_decompressed_bytes: int = 64 * 1024 * 1024
    tick_interval: float = 0.1
    download_share: float = 0.2
    parse_curve_k: float = 2.5
    scratch_dir: str | None = None


@dataclass(slots=True)
class SourceOutcome:
    schedule: Schedule
    channel_index: ChannelNameIndex
    byte_size: int
    parse_duration_seconds: float


async def process_single_source(
    descriptor: SourceDescriptor,
    source_index: int,
    report: Callable[[float], None],
    *,
    options: FetchOptions,
    heuristics: DurationHeuristicsStore | None = None,
    client: httpx.AsyncClient | None = None
) -> SourceOutcome:
    """
    Download, inflate and parse a single EPG source

    Args:
        descriptor: Source URL plus its historical size and parse duration
        source_index: Index of this source (for file naming and logs)
        report: Receives this source's overall fraction in [0, 1]

    Keyword Args:
        options: Timeouts, progress model and limits
        heuristics: Store to record observed size and parse duration into
        client: Shared HTTP client (a fresh one per download when None)

    Returns:
        SourceOutcome with the partial schedule and name table
    """
    url = descriptor.url
    safe_url = sanitize_url(url)
    download_share = options.download_share
    raw_file = make_scratch_path(f"epg_source_{source_index}_", options.scratch_dir)
    payload_file: Path | None = None

    try:
        logger.info(f"  [Source {source_index}] Starting download...")
        logger.debug(f"  [Source {source_index}] Download URL: {safe_url}")
        download = await download_source(
            url,
            raw_file,
            expected_size=descriptor.expected_byte_size,
            on_progress=lambda fraction: report(
                composite_fraction(fraction, 0.0, download_share=download_share)
            ),
            client=client,
            connect_timeout=options.connect_timeout,
            read_timeout=options.read_timeout,
            max_retries=options.max_retries,
            backoff_factor=options.backoff_factor,
            fallback_size=options.expected_size_fallback,
        )
        logger.info(
            f"  [Source {source_index}] Download successful: {download.byte_size / 1024 / 1024:.2f} MB"
        )
        if heuristics is not None:
            await heuristics.record_byte_size(url, download.byte_size)

        payload_file = await prepare_payload(
            raw_file,
            max_output_bytes=options.max_decompressed_bytes,
            scratch_dir=options.scratch_dir,
        )
        report(composite_fraction(1.0, 0.0, download_share=download_share))

        logger.info(f"  [Source {source_index}] Parsing XMLTV content...")
        schedule, channel_index, parse_seconds = await parse_xmltv_async(
            payload_file,
            report,
            expected_seconds=descriptor.expected_parse_duration_seconds or options.expected_parse_duration,
            options=options,
        )
        if heuristics is not None:
            await heuristics.record_parse_duration(url, parse_seconds)

        report(1.0)
        programs = sum(len(items) for items in schedule.values())
        logger.info(
            f"  [Source {source_index}] Parsing complete in {parse_seconds:.1f}s: "
            f"{len(schedule)} channels, {programs} programs, {len(channel_index)} names"
        )
        if not programs:
            logger.warning(f"  [Source {source_index}] No programs found in XMLTV document")

        return SourceOutcome(
            schedule=schedule,
            channel_index=channel_index,
            byte_size=download.byte_size,
            parse_duration_seconds=parse_seconds,
        )

    finally:
        logger.debug(f"  [Source {source_index}] Cleaning up scratch files...")
        cleanup_temp_file(raw_file)
        if payload_file is not None and payload_file != raw_file:
            cleanup_temp_file(payload_file)


async def parse_xmltv_async(
    file_path: Path | str,
    report: Callable[[float], None],
    *,
    expected_seconds: float,
    options: FetchOptions
) -> tuple[Schedule, ChannelNameIndex, float]:
    """
    Parse an XMLTV file on a worker thread while a ticker animates progress.

    The ticker reports download_share + parse_share * estimate until the
    parse returns; the caller snaps the fraction to 1.0 afterwards.

    Args:
        file_path: Path to plain XMLTV file
        report: Receives this source's overall fraction

    Keyword Args:
        expected_seconds: Historical parse duration for this source
        options: Timeout and progress model

    Returns:
        Tuple of (schedule, channel_index, measured parse seconds)

    Raises:
        ValueError: If parsing times out
        etree.XMLSyntaxError: If XML is malformed
    """
    if isinstance(file_path, str):
        file_path = Path(file_path)

    effective_timeout = options.parse_timeout if options.parse_timeout and options.parse_timeout > 0 else None
    timeout_display = f"{effective_timeout}s" if effective_timeout else "disabled"
    cancel_event = threading.Event()
    ticker = ParseProgressTicker(
        report,
        expected_seconds,
        download_share=options.download_share,
        k=options.parse_curve_k,
        interval=options.tick_interval,
    )

    loop = asyncio.get_running_loop()
    logger.debug("Offloading XML parsing to thread pool executor (timeout: %s)...", timeout_display)
    started = time.monotonic()
    ticker.start()
    try:
        parse_task = loop.run_in_executor(
            None,
            functools.partial(
                parse_xmltv_file,
                file_path,
                default_tz=options.default_tz,
                cancel_event=cancel_event,
            ),
        )
        if effective_timeout:
            schedule, channel_index = await asyncio.wait_for(parse_task, timeout=effective_timeout)
        else:
            schedule, channel_index = await parse_task
    except asyncio.TimeoutError:
        logger.error("XML parsing timed out after %s for %s", timeout_display, file_path)
        raise ValueError("XML parsing timed out - file may be too large or malformed")
    finally:
        # stops the worker thread at its next chunk if we are leaving early
        cancel_event.set()
        await ticker.stop()

    return schedule, channel_index, time.monotonic() - started
