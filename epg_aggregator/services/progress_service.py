"""
Progress Aggregation

Combines the independently moving progress of every source into the single
percentage handed to the caller's sink.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Callable

from epg_aggregator.services.fetch_types import ProgressSink


logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_SHARE = 0.2
DEFAULT_PARSE_CURVE_K = 2.5
DEFAULT_EXPECTED_PARSE_SECONDS = 20.0
PARSE_ESTIMATE_CAP = 0.99


def estimate_parse_fraction(
    elapsed_seconds: float,
    expected_seconds: float,
    *,
    k: float = DEFAULT_PARSE_CURVE_K
) -> float:
    """
    Synthesize parse progress from elapsed time.

    Follows 1 - e^(-k * elapsed / expected), capped below 1.0 so only a
    finished parse reaches 100%. The curve keeps rising past the expected
    duration, just more slowly.
    """
    if expected_seconds <= 0:
        expected_seconds = DEFAULT_EXPECTED_PARSE_SECONDS
    elapsed_seconds = max(0.0, elapsed_seconds)
    return min(1.0 - math.exp(-k * elapsed_seconds / expected_seconds), PARSE_ESTIMATE_CAP)


def composite_fraction(
    download_fraction: float,
    parse_fraction: float,
    *,
    download_share: float = DEFAULT_DOWNLOAD_SHARE
) -> float:
    """Weight the two phases of one source into a single fraction."""
    parse_share = 1.0 - download_share
    return download_share * download_fraction + parse_share * parse_fraction


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


class ProgressAggregator:
    """
    Owns per-source fractions for one fetch operation.

    Workers never write the shared map: report() only enqueues a message and
    a single consumer task applies it and calls the sink. Each source's
    fraction only ever moves up, so the published value never decreases.

    Usage:
        async with ProgressAggregator(total, sink) as aggregator:
            aggregator.report(0, 0.5)
    """

    def __init__(self, total_sources: int, sink: ProgressSink | None = None):
        self.total_sources = max(1, total_sources)
        self._sink = sink
        self._fractions: dict[int, float] = {}
        self._queue: asyncio.Queue[tuple[int, float] | None] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._closed = False
        self._cancelled = False
        self.overall = 0.0

    async def __aenter__(self) -> "ProgressAggregator":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.close()
        else:
            self.cancel()

    def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume(), name="epg-progress")

    def report(self, source_index: int, fraction: float) -> None:
        """Post a new fraction for one source. Ignored once closed."""
        if self._closed:
            return
        self._queue.put_nowait((source_index, _clamp(fraction)))

    def reporter(self, source_index: int) -> Callable[[float], None]:
        """Bind report() to one source index."""
        return lambda fraction: self.report(source_index, fraction)

    async def close(self) -> None:
        """Stop accepting reports, apply everything already queued, then stop."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        if self._consumer is not None:
            await self._consumer

    def cancel(self) -> None:
        """Stop immediately; queued reports are discarded and the sink is not called again."""
        self._closed = True
        self._cancelled = True
        if self._consumer is not None:
            self._consumer.cancel()

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            self._apply(*message)

    def _apply(self, source_index: int, fraction: float) -> None:
        if self._cancelled:
            return
        previous = self._fractions.get(source_index, 0.0)
        if fraction <= previous:
            return

        self._fractions[source_index] = fraction
        overall = min(1.0, sum(self._fractions.values()) / self.total_sources)
        if overall <= self.overall:
            return
        self.overall = overall

        if self._sink is None:
            return
        try:
            self._sink(overall)
        except Exception as exc:
            logger.warning("Progress sink raised %s; continuing", exc, exc_info=True)


class ParseProgressTicker:
    """
    Periodic timer that feeds the synthetic parse estimate for one source.

    Runs as its own task beside the parse and is stopped with it.
    """

    def __init__(
        self,
        report: Callable[[float], None],
        expected_seconds: float,
        *,
        download_share: float = DEFAULT_DOWNLOAD_SHARE,
        k: float = DEFAULT_PARSE_CURVE_K,
        interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic
    ):
        self._report = report
        self.expected_seconds = expected_seconds
        self.download_share = download_share
        self.k = k
        self.interval = interval
        self._clock = clock
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="epg-parse-ticker")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.wait([self._task])
        self._task = None

    async def _run(self) -> None:
        started = self._clock()
        while True:
            estimate = estimate_parse_fraction(
                self._clock() - started,
                self.expected_seconds,
                k=self.k,
            )
            self._report(
                composite_fraction(1.0, estimate, download_share=self.download_share)
            )
            await asyncio.sleep(self.interval)
