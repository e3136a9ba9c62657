"""
Data merging utilities

This module handles merging of schedules and channel name tables from
multiple sources into one deduplicated timeline.
"""
import logging
from collections.abc import Iterable, Sequence

from epg_aggregator.services.fetch_types import (
    ChannelNameIndex,
    PartialResult,
    Program,
    Schedule,
)

logger = logging.getLogger(__name__)


def merge_channel_indexes(indexes: Iterable[ChannelNameIndex]) -> ChannelNameIndex:
    """
    Union display-name tables; the last table in iteration order wins a collision.

    Args:
        indexes: Name tables in source order

    Returns:
        Merged name -> channel id table
    """
    merged: ChannelNameIndex = {}

    for index in indexes:
        for name, channel_id in index.items():
            current = merged.get(name)
            if current is not None and current != channel_id:
                logger.warning(
                    "Display name %r maps to %s and %s; keeping %s",
                    name,
                    current,
                    channel_id,
                    channel_id,
                )
            merged[name] = channel_id

    return merged


def merge_schedules(schedules: Iterable[Schedule]) -> Schedule:
    """
    Combine per-source schedules into one timeline per channel.

    Programs for a channel are concatenated in source order, stably sorted by
    start, and any program whose start was already seen is dropped, so the
    earliest source wins a tie.

    Args:
        schedules: Schedules in source order

    Returns:
        Schedule ordered by start with unique starts per channel
    """
    collected: dict[str, list[Program]] = {}
    for schedule in schedules:
        for channel_id, programs in schedule.items():
            collected.setdefault(channel_id, []).extend(programs)

    return {
        channel_id: dedupe_programs(programs)
        for channel_id, programs in collected.items()
    }


def dedupe_programs(programs: Sequence[Program]) -> list[Program]:
    """Sort by start and keep the first program for each start instant."""
    seen = set()
    unique: list[Program] = []

    for program in sorted(programs, key=lambda p: p.start):
        if program.start in seen:
            logger.debug(
                "Skipping duplicate program: %s on %s",
                program.title,
                program.channel_id,
            )
            continue
        seen.add(program.start)
        unique.append(program)

    return unique


def merge_partial_results(partials: Sequence[PartialResult]) -> tuple[Schedule, ChannelNameIndex]:
    """
    Merge all per-source results; failed sources contribute nothing.

    Args:
        partials: Results in source order

    Returns:
        Tuple of (schedule, channel_index)
    """
    schedule = merge_schedules(partial.schedule for partial in partials)
    channel_index = merge_channel_indexes(partial.channel_index for partial in partials)
    return schedule, channel_index
