"""
EPG Query Service

Read operations over the merged in-memory schedule: window slices per
channel, the programme airing now, and display-name lookups.
"""
from bisect import bisect_left, bisect_right
from datetime import datetime, timezone
import logging

from epg_aggregator.schemas import EPGRequest, EPGResponse, ProgramResponse
from epg_aggregator.services.fetch_types import ChannelNameIndex, Program, Schedule
from epg_aggregator.utils.timezone import convert_to_timezone, parse_iso8601_to_utc

logger = logging.getLogger(__name__)


def normalize_display_name(name: str) -> str:
    """Key form used by the channel name index."""
    return name.strip().lower()


def lookup_channel_id(channel_index: ChannelNameIndex, display_name: str) -> str | None:
    """Resolve a display name to its channel id, ignoring case and surrounding spaces."""
    key = normalize_display_name(display_name)
    if not key:
        return None
    return channel_index.get(key)


def get_current_program(schedule: Schedule, channel_id: str, now: datetime | None = None) -> Program | None:
    """
    Find the programme airing at `now` on a channel

    Args:
        schedule: Merged schedule (ordered by start per channel)
        channel_id: Channel id
        now: Instant to look up (current UTC time when None)

    Returns:
        Program with start <= now < stop, or None
    """
    programs = schedule.get(channel_id)
    if not programs:
        return None
    now = now or datetime.now(timezone.utc)

    starts = [program.start for program in programs]
    position = bisect_right(starts, now) - 1
    if position < 0:
        return None
    candidate = programs[position]
    return candidate if now < candidate.stop else None


def get_programs_in_window(
    schedule: Schedule,
    channel_id: str,
    start_time: datetime,
    end_time: datetime
) -> list[Program]:
    """
    Programs for a channel whose start falls in [start_time, end_time)

    Args:
        schedule: Merged schedule (ordered by start per channel)
        channel_id: Channel id
        start_time: Start of time window
        end_time: End of time window

    Returns:
        List of programs ordered by start
    """
    programs = schedule.get(channel_id) or []
    starts = [program.start for program in programs]
    return programs[bisect_left(starts, start_time):bisect_left(starts, end_time)]


def get_epg_data(schedule: Schedule, request: EPGRequest) -> EPGResponse:
    """
    Get EPG data for multiple channels

    Args:
        schedule: Merged schedule
        request: EPG request with channels, from_date, to_date, and timezone

    Returns:
        EPG data grouped by channel id with timestamps in requested timezone
    """
    logger.info(f"Received EPG request: {len(request.channels)} channels, timezone={request.timezone}")

    start_time = parse_iso8601_to_utc(request.from_date)
    end_time = parse_iso8601_to_utc(request.to_date)
    now = datetime.now(timezone.utc)

    epg_data: dict[str, list[ProgramResponse]] = {}
    channels_found = 0
    total_programs = 0

    for channel in request.channels:
        programs = get_programs_in_window(schedule, channel.channel_id, start_time, end_time)
        if programs:
            channels_found += 1
            total_programs += len(programs)
        epg_data[channel.channel_id] = [
            to_program_response(program, request.timezone) for program in programs
        ]

    logger.info(f"EPG response: {channels_found} channels found, {total_programs} programs")

    return EPGResponse(
        timestamp=convert_to_timezone(now, request.timezone),
        timezone=request.timezone,
        channels_requested=len(request.channels),
        channels_found=channels_found,
        total_programs=total_programs,
        epg=epg_data
    )


def to_program_response(program: Program, timezone_str: str = "UTC") -> ProgramResponse:
    return ProgramResponse(
        channel_id=program.channel_id,
        start_time=convert_to_timezone(program.start, timezone_str),
        stop_time=convert_to_timezone(program.stop, timezone_str),
        title=program.title,
        description=program.description,
    )
