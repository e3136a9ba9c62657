"""
Cache Store

Persists the merged schedule and channel-name table as one versioned JSON
envelope so the last good result can be shown immediately on startup.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import aiofiles
from pydantic import BaseModel, Field, ValidationError

from epg_aggregator.services.fetch_types import ChannelNameIndex, Program, Schedule


logger = logging.getLogger(__name__)

# Bump whenever the envelope layout changes; older files then load as a miss
CACHE_SCHEMA_VERSION = 3


class CachedProgram(BaseModel):
    channel_id: str
    title: str
    description: str | None = None
    start: datetime
    stop: datetime


class CacheEnvelope(BaseModel):
    """On-disk layout: {version, saved_at, epg, map}"""
    version: int = CACHE_SCHEMA_VERSION
    saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    epg: dict[str, list[CachedProgram]] = Field(default_factory=dict)
    map: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_schedule(cls, schedule: Schedule, channel_index: ChannelNameIndex) -> "CacheEnvelope":
        return cls(
            epg={
                channel_id: [
                    CachedProgram(
                        channel_id=program.channel_id,
                        title=program.title,
                        description=program.description,
                        start=program.start,
                        stop=program.stop,
                    )
                    for program in programs
                ]
                for channel_id, programs in schedule.items()
            },
            map=dict(channel_index),
        )

    def to_schedule(self) -> tuple[Schedule, ChannelNameIndex]:
        schedule: Schedule = {
            channel_id: [
                Program(
                    channel_id=item.channel_id,
                    title=item.title,
                    description=item.description,
                    start=item.start.astimezone(timezone.utc),
                    stop=item.stop.astimezone(timezone.utc),
                )
                for item in programs
            ]
            for channel_id, programs in self.epg.items()
        }
        return schedule, dict(self.map)


class CacheStore:
    """
    Single-file cache with atomic replace.

    save() writes a sibling temp file and renames it over the target, so a
    concurrent load() sees either the old or the new envelope, never a mix.
    load() treats a missing, unreadable or outdated file as "no cache".
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def save(self, schedule: Schedule, channel_index: ChannelNameIndex) -> None:
        envelope = CacheEnvelope.from_schedule(schedule, channel_index)
        payload = envelope.model_dump_json()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            os.replace(temp_path, self.path)
        except BaseException:
            if temp_path.exists():
                temp_path.unlink()
            raise

        logger.info(
            "Saved EPG cache to %s (%s channels, %.2f MB)",
            self.path,
            len(envelope.epg),
            len(payload) / (1024 * 1024),
        )

    async def load(self) -> tuple[Schedule, ChannelNameIndex] | None:
        try:
            async with aiofiles.open(self.path, "rb") as f:
                raw = await f.read()
        except FileNotFoundError:
            logger.info("No EPG cache at %s", self.path)
            return None
        except OSError as exc:
            logger.warning("EPG cache at %s is unreadable: %s", self.path, exc)
            return None

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("EPG cache at %s is corrupt: %s", self.path, exc)
            return None

        version = data.get("version") if isinstance(data, dict) else None
        if version != CACHE_SCHEMA_VERSION:
            logger.info(
                "EPG cache version %s does not match %s; ignoring",
                version,
                CACHE_SCHEMA_VERSION,
            )
            return None

        try:
            envelope = CacheEnvelope.model_validate(data)
        except ValidationError as exc:
            logger.warning("EPG cache at %s failed validation: %s", self.path, exc)
            return None

        schedule, channel_index = envelope.to_schedule()
        logger.info(
            "Loaded EPG cache from %s (saved %s): %s channels, %s names",
            self.path,
            envelope.saved_at.isoformat(),
            len(schedule),
            len(channel_index),
        )
        return schedule, channel_index
