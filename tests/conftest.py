"""
Shared fixtures for the EPG aggregator test-suite.
"""

import asyncio
import gzip
from datetime import datetime, timedelta, timezone

import pytest

from epg_aggregator.services.fetch_coordinator import reset_fetch_coordinator


BASE_START = datetime(2025, 10, 9, 0, 0, tzinfo=timezone.utc)


def xmltv_stamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S +0000")


def build_xmltv(channels: dict[str, list[str]], programmes: list[tuple[str, datetime, datetime, str]]) -> bytes:
    """Render a small XMLTV document: channels maps id -> display names."""
    parts = ['<?xml version="1.0" encoding="UTF-8"?>', "<tv>"]
    for channel_id, names in channels.items():
        parts.append(f'<channel id="{channel_id}">')
        parts.extend(f"<display-name>{name}</display-name>" for name in names)
        parts.append("</channel>")
    for channel_id, start, stop, title in programmes:
        parts.append(
            f'<programme channel="{channel_id}" start="{xmltv_stamp(start)}" stop="{xmltv_stamp(stop)}">'
            f"<title>{title}</title></programme>"
        )
    parts.append("</tv>")
    return "\n".join(parts).encode("utf-8")


def hourly_programmes(channel_id: str, count: int, title: str = "Show") -> list[tuple[str, datetime, datetime, str]]:
    return [
        (
            channel_id,
            BASE_START + timedelta(hours=i),
            BASE_START + timedelta(hours=i + 1),
            f"{title} {i}",
        )
        for i in range(count)
    ]


@pytest.fixture
def xmltv_builder():
    return build_xmltv


@pytest.fixture
def hourly():
    return hourly_programmes


@pytest.fixture
def gzipped():
    return gzip.compress


@pytest.fixture
def run():
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run


@pytest.fixture(autouse=True)
def fresh_coordinator():
    reset_fetch_coordinator()
    yield
    reset_fetch_coordinator()
