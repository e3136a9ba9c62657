"""
Unit tests for the streaming XMLTV decoder.
"""

import threading
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest
from lxml import etree

from epg_aggregator.services.xmltv_parser_service import (
    ParseAbortedError,
    parse_xmltv_bytes,
    parse_xmltv_file,
    parse_xmltv_stream,
)


SAMPLE = b"""<?xml version="1.0" encoding="UTF-8"?>
<tv generator-info-name="test">
  <channel id="x">
    <display-name>ESPN HD</display-name>
    <display-name lang="es">ESPN Deportes</display-name>
    <icon src="http://example.com/espn.png"/>
  </channel>
  <channel id="bbc1.uk"><display-name>  BBC One  </display-name></channel>
  <programme channel="x" start="20251009180000 +0000" stop="20251009190000 +0000">
    <title lang="en">SportsCenter</title>
    <title lang="es">SportsCenter Deportes</title>
    <desc>Highlights &amp; analysis</desc>
    <category>Sports</category>
  </programme>
  <programme channel="bbc1.uk" start="20251009190000 +0100" stop="20251009200000 +0100">
    <title>News</title>
  </programme>
</tv>
"""


class TestChannelIndex:
    """Display names become lower-cased lookup keys."""

    def test_espn_hd_display_name(self):
        _, channel_index = parse_xmltv_bytes(
            b'<tv><channel id="x"><display-name>ESPN HD</display-name></channel></tv>'
        )
        assert channel_index["espn hd"] == "x"

    def test_every_display_name_is_indexed(self):
        _, channel_index = parse_xmltv_bytes(SAMPLE)
        assert channel_index == {
            "espn hd": "x",
            "espn deportes": "x",
            "bbc one": "bbc1.uk",
        }

    def test_channel_without_id_is_skipped(self):
        _, channel_index = parse_xmltv_bytes(
            b"<tv><channel><display-name>Nameless</display-name></channel></tv>"
        )
        assert channel_index == {}


class TestProgrammes:
    """Programme decoding and entry-level drops."""

    def test_sample_document(self):
        schedule, _ = parse_xmltv_bytes(SAMPLE)

        [sports] = schedule["x"]
        assert sports.title == "SportsCenter"
        assert sports.description == "Highlights & analysis"
        assert sports.start == datetime(2025, 10, 9, 18, 0, tzinfo=timezone.utc)
        assert sports.stop == datetime(2025, 10, 9, 19, 0, tzinfo=timezone.utc)

        [news] = schedule["bbc1.uk"]
        assert news.title == "News"
        assert news.description is None
        assert news.start == datetime(2025, 10, 9, 18, 0, tzinfo=timezone.utc)

    def test_malformed_timestamp_drops_only_its_entry(self):
        document = b"""<tv>
          <programme channel="c" start="20251009180000 +0000" stop="20251009190000 +0000"><title>A</title></programme>
          <programme channel="c" start="2025-10-09 19:00" stop="20251009200000 +0000"><title>B</title></programme>
          <programme channel="c" start="20251009200000 +0000" stop="20251009210000 +0000"><title>C</title></programme>
        </tv>"""
        schedule, _ = parse_xmltv_bytes(document)
        assert [program.title for program in schedule["c"]] == ["A", "C"]

    def test_data_quality_drops(self):
        """Empty title, non-positive duration and missing channel are dropped silently."""
        document = b"""<tv>
          <programme channel="c" start="20251009180000 +0000" stop="20251009190000 +0000"><title>   </title></programme>
          <programme channel="c" start="20251009180000 +0000" stop="20251009180000 +0000"><title>Zero</title></programme>
          <programme channel="c" start="20251009190000 +0000" stop="20251009180000 +0000"><title>Backwards</title></programme>
          <programme start="20251009180000 +0000" stop="20251009190000 +0000"><title>Orphan</title></programme>
          <programme channel="c" start="20251009180000 +0000"><title>No stop</title></programme>
          <programme channel="c" start="20251009200000 +0000" stop="20251009210000 +0000"><title>Kept</title></programme>
        </tv>"""
        schedule, _ = parse_xmltv_bytes(document)
        assert list(schedule) == ["c"]
        assert [program.title for program in schedule["c"]] == ["Kept"]

    def test_unknown_elements_are_ignored(self):
        document = b"""<tv>
          <unknown><nested attr="1">text</nested></unknown>
          <programme channel="c" start="20251009180000 +0000" stop="20251009190000 +0000" extra="y">
            <sub-title>Ignored</sub-title>
            <title>Kept</title>
            <rating system="x"><value>PG</value></rating>
          </programme>
        </tv>"""
        schedule, _ = parse_xmltv_bytes(document)
        [program] = schedule["c"]
        assert program.title == "Kept"
        assert program.description is None

    def test_markup_inside_text_fields_keeps_text(self):
        document = b"""<tv>
          <channel id="c"><display-name>Sky <b>One</b></display-name></channel>
          <programme channel="c" start="20250101000000 +0000" stop="20250101010000 +0000">
            <title>Foo <i>Bar</i></title>
            <desc><p>Part <em>one</em></p> and two</desc>
          </programme>
          <programme channel="c" start="20250101010000 +0000" stop="20250101020000 +0000">
            <title><i>Baz</i></title>
          </programme>
        </tv>"""
        schedule, channel_index = parse_xmltv_bytes(document)
        first, second = schedule["c"]
        assert first.title == "Foo Bar"
        assert first.description == "Part one and two"
        assert second.title == "Baz"
        assert channel_index == {"sky one": "c"}

    def test_bare_timestamps_use_default_zone(self):
        document = b"""<tv>
          <programme channel="c" start="20250709180000" stop="20250709190000"><title>Local</title></programme>
        </tv>"""
        schedule, _ = parse_xmltv_bytes(document, default_tz=ZoneInfo("Europe/Berlin"))
        assert schedule["c"][0].start == datetime(2025, 7, 9, 16, 0, tzinfo=timezone.utc)

    def test_namespaced_tags(self):
        document = b"""<tv xmlns="urn:example">
          <channel id="n"><display-name>Namespaced</display-name></channel>
          <programme channel="n" start="20251009180000 +0000" stop="20251009190000 +0000"><title>T</title></programme>
        </tv>"""
        schedule, channel_index = parse_xmltv_bytes(document)
        assert channel_index == {"namespaced": "n"}
        assert len(schedule["n"]) == 1

    def test_many_well_formed_programmes(self, xmltv_builder, hourly):
        schedule, _ = parse_xmltv_bytes(xmltv_builder({"c": ["C"]}, hourly("c", 48)))
        assert len(schedule["c"]) == 48


class TestStreaming:

    def test_chunked_feed_matches_single_feed(self):
        chunks = [SAMPLE[i:i + 7] for i in range(0, len(SAMPLE), 7)]
        assert parse_xmltv_stream(chunks) == parse_xmltv_bytes(SAMPLE)

    def test_malformed_xml_raises(self):
        with pytest.raises(etree.XMLSyntaxError):
            parse_xmltv_bytes(b"<tv><programme channel='c'>")

    def test_cancel_event_stops_parse(self):
        event = threading.Event()
        event.set()
        with pytest.raises(ParseAbortedError):
            parse_xmltv_stream([SAMPLE], cancel_event=event)

    def test_parse_file(self, tmp_path):
        path = tmp_path / "guide.xml"
        path.write_bytes(SAMPLE)
        schedule, channel_index = parse_xmltv_file(path, chunk_size=16)
        assert set(schedule) == {"x", "bbc1.uk"}
        assert channel_index["bbc one"] == "bbc1.uk"
