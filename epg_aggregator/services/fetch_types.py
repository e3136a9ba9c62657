"""
Shared dataclasses used across the EPG aggregation pipeline.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Literal


@dataclass(slots=True)
class Program:
    """One schedule entry decoded from a <programme> element."""
    channel_id: str
    title: str
    start: datetime
    stop: datetime
    description: str | None = None


# channel id -> programs ordered by start
Schedule = dict[str, list[Program]]

# lower-cased display name -> channel id
ChannelNameIndex = dict[str, str]

ProgressSink = Callable[[float], None]


@dataclass(slots=True)
class SourceDescriptor:
    """A configured EPG source plus what was observed about it last time."""
    url: str
    expected_byte_size: int | None = None
    expected_parse_duration_seconds: float | None = None


@dataclass(slots=True)
class PartialResult:
    """Outcome of one source pipeline. Failed sources carry empty data."""
    index: int
    url: str
    sanitized_url: str
    started_at: datetime
    completed_at: datetime
    status: Literal["success", "failed"]
    schedule: Schedule = field(default_factory=dict)
    channel_index: ChannelNameIndex = field(default_factory=dict)
    byte_size: int = 0
    parse_duration_seconds: float | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.completed_at - self.started_at).total_seconds())

    @property
    def programs_parsed(self) -> int:
        return sum(len(programs) for programs in self.schedule.values())

    def to_dict(self) -> dict:
        payload = {
            "source_index": self.index,
            "sanitized_url": self.sanitized_url,
            "status": self.status,
            "channels_named": len(self.channel_index),
            "channels_scheduled": len(self.schedule),
            "programs_parsed": self.programs_parsed,
            "byte_size": self.byte_size,
            "parse_duration_seconds": self.parse_duration_seconds,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class FetchResult:
    """Merged output of one fetch_and_merge call."""
    schedule: Schedule = field(default_factory=dict)
    channel_index: ChannelNameIndex = field(default_factory=dict)
    sources: list[PartialResult] = field(default_factory=list)

    def __iter__(self):
        yield self.schedule
        yield self.channel_index

    @property
    def total_programs(self) -> int:
        return sum(len(programs) for programs in self.schedule.values())

    def to_dict(self) -> dict:
        return {
            "sources_processed": len(self.sources),
            "sources_succeeded": sum(1 for s in self.sources if s.status == "success"),
            "sources_failed": sum(1 for s in self.sources if s.status == "failed"),
            "channels": len(self.schedule),
            "channel_names": len(self.channel_index),
            "programs": self.total_programs,
            "source_details": [summary.to_dict() for summary in self.sources],
        }


__all__ = [
    "ChannelNameIndex",
    "FetchResult",
    "PartialResult",
    "Program",
    "ProgressSink",
    "Schedule",
    "SourceDescriptor",
]
