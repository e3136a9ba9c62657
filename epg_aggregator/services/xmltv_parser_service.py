from datetime import datetime, timezone, tzinfo
from pathlib import Path
from threading import Event
from typing import Iterable, Optional
import logging

from lxml import etree # type: ignore

from epg_aggregator.services.fetch_types import ChannelNameIndex, Program, Schedule
from epg_aggregator.utils.timezone import parse_xmltv_timestamp

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


class ParseAbortedError(RuntimeError):
    """Raised when a streaming parse is stopped through its cancel event"""
    pass


class ScheduleTarget:
    """
    lxml parser target that turns XMLTV events into a schedule.

    Only one <channel> or <programme> is held at a time, so memory does not
    grow with the document. Elements other than the tracked ones never change
    state, and character data outside a tracked field is dropped.
    """

    def __init__(self, default_tz: tzinfo = timezone.utc):
        self.default_tz = default_tz
        self.schedule: Schedule = {}
        self.channel_index: ChannelNameIndex = {}
        self.programs_emitted = 0
        self.programs_dropped = 0
        self._reset()

    def _reset(self) -> None:
        self._state: Optional[str] = None
        self._field: Optional[str] = None
        self._depth = 0
        self._buffer: list[str] = []
        self._channel_id = ""
        self._names: list[str] = []
        self._start: Optional[datetime] = None
        self._stop: Optional[datetime] = None
        self._title: Optional[str] = None
        self._desc: Optional[str] = None

    def start(self, tag, attrib) -> None:
        name = _local_name(tag)

        if self._state is None:
            if name == "channel":
                self._state = "channel"
                self._channel_id = (attrib.get("id") or "").strip()
            elif name == "programme":
                self._state = "programme"
                self._channel_id = (attrib.get("channel") or "").strip()
                self._start = parse_xmltv_timestamp(attrib.get("start"), self.default_tz)
                self._stop = parse_xmltv_timestamp(attrib.get("stop"), self.default_tz)
            return

        if self._field is not None:
            # markup inside a tracked field only nests; its text still counts
            self._depth += 1
        elif self._state == "channel" and name == "display-name":
            self._field = "name"
            self._buffer = []
        elif self._state == "programme" and name in ("title", "desc"):
            self._field = name
            self._buffer = []

    def data(self, data: str) -> None:
        if self._field is not None:
            self._buffer.append(data)

    def end(self, tag) -> None:
        if self._depth:
            self._depth -= 1
            return

        name = _local_name(tag)

        if self._state == "channel" and name == "channel":
            self._finish_channel()
            self._reset()
            return
        if self._state == "programme" and name == "programme":
            self._finish_programme()
            self._reset()
            return

        if self._field is not None:
            text = "".join(self._buffer).strip()
            if self._field == "name" and text:
                self._names.append(text.lower())
            elif self._field == "title" and text and self._title is None:
                self._title = text
            elif self._field == "desc" and text and self._desc is None:
                self._desc = text
        self._field = None
        self._buffer = []

    def comment(self, text) -> None:
        pass

    def close(self) -> tuple[Schedule, ChannelNameIndex]:
        return self.schedule, self.channel_index

    def _finish_channel(self) -> None:
        if not self._channel_id:
            logger.debug("Skipping channel with missing ID attribute")
            return
        for display_name in self._names:
            self.channel_index[display_name] = self._channel_id

    def _finish_programme(self) -> None:
        start, stop = self._start, self._stop
        if (
            not self._channel_id
            or start is None
            or stop is None
            or not self._title
            or start >= stop
        ):
            self.programs_dropped += 1
            return

        self.schedule.setdefault(self._channel_id, []).append(
            Program(
                channel_id=self._channel_id,
                title=self._title,
                description=self._desc,
                start=start,
                stop=stop,
            )
        )
        self.programs_emitted += 1


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rpartition("}")[2]


def parse_xmltv_stream(
    chunks: Iterable[bytes],
    *,
    default_tz: tzinfo = timezone.utc,
    cancel_event: Event | None = None
) -> tuple[Schedule, ChannelNameIndex]:
    """
    Decode an XMLTV document delivered as a sequence of byte chunks

    Args:
        chunks: Raw (already decompressed) XML bytes, in order
        default_tz: Zone for timestamps that carry no offset
        cancel_event: Checked between chunks; parsing stops once it is set

    Returns:
        Tuple of (schedule, channel_index)

    Raises:
        etree.XMLSyntaxError: If the document is not well-formed XML
        ParseAbortedError: If cancel_event was set mid-parse
    """
    target = ScheduleTarget(default_tz=default_tz)
    parser = etree.XMLParser(
        target=target,
        resolve_entities=False,
        no_network=True,
        huge_tree=True,
    )

    for chunk in chunks:
        if cancel_event is not None and cancel_event.is_set():
            raise ParseAbortedError("XMLTV parse cancelled")
        if chunk:
            parser.feed(chunk)

    schedule, channel_index = parser.close()

    logger.debug(
        "Decoded %s programs (%s dropped) across %s channels, %s channel names",
        target.programs_emitted,
        target.programs_dropped,
        len(schedule),
        len(channel_index),
    )
    return schedule, channel_index


def parse_xmltv_bytes(data: bytes, *, default_tz: tzinfo = timezone.utc) -> tuple[Schedule, ChannelNameIndex]:
    """Decode an in-memory XMLTV document"""
    return parse_xmltv_stream([data], default_tz=default_tz)


def parse_xmltv_file(
    file_path: Path | str,
    *,
    default_tz: tzinfo = timezone.utc,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    cancel_event: Event | None = None
) -> tuple[Schedule, ChannelNameIndex]:
    """
    Stream-parse an XMLTV file from disk

    Args:
        file_path: Path to XMLTV file
        default_tz: Zone for timestamps that carry no offset
        chunk_size: Bytes read per feed call
        cancel_event: Checked between chunks

    Returns:
        Tuple of (schedule, channel_index)

    Raises:
        etree.XMLSyntaxError: If XML is malformed
        FileNotFoundError: If file doesn't exist
        OSError: If file can't be read
    """
    logger.debug(f"Parsing XMLTV file: {file_path}")

    with open(file_path, "rb") as handle:
        schedule, channel_index = parse_xmltv_stream(
            iter(lambda: handle.read(chunk_size), b""),
            default_tz=default_tz,
            cancel_event=cancel_event,
        )

    logger.info(
        "XMLTV parsing complete: %s channels, %s channel names",
        len(schedule),
        len(channel_index),
    )
    return schedule, channel_index
