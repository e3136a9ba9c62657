"""
Unit tests for source downloads, payload sniffing and decompression.
"""

import gzip
import zlib

import httpx
import pytest

from epg_aggregator.utils import file_operations
from epg_aggregator.utils.file_operations import (
    DecompressionError,
    cleanup_temp_file,
    decompress_file,
    detect_compression,
    download_source,
    effective_expected_size,
    make_scratch_path,
    prepare_payload,
)


async def _stream(chunks):
    for chunk in chunks:
        yield chunk


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def no_backoff(monkeypatch):
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr(file_operations.asyncio, "sleep", fake_sleep)
    return waits


class TestExpectedSize:

    def test_prefers_content_length(self):
        assert effective_expected_size(500, 900, 100) == 500

    def test_falls_back_to_history_then_default(self):
        assert effective_expected_size(0, 900, 100) == 900
        assert effective_expected_size(None, None, 100) == 100
        assert effective_expected_size(None, 0, 0) == 1


class TestDownloadSource:

    def test_streams_to_disk_with_progress(self, tmp_path, run):
        body = [b"a" * 100, b"b" * 100, b"c" * 200]
        seen = []

        def handler(request):
            assert request.headers["Accept-Encoding"] == "gzip"
            return httpx.Response(200, headers={"Content-Length": "400"}, content=_stream(body))

        async def scenario():
            async with _client(handler) as client:
                return await download_source(
                    "http://example.com/guide.xml",
                    tmp_path / "raw",
                    on_progress=seen.append,
                    client=client,
                )

        result = run(scenario())
        assert result.byte_size == 400
        assert result.content_length == 400
        assert (tmp_path / "raw").read_bytes() == b"".join(body)
        assert seen == [0.25, 0.5, 0.99]

    def test_missing_length_uses_expected_size_and_caps(self, tmp_path, run):
        seen = []

        def handler(request):
            return httpx.Response(200, content=_stream([b"x" * 50, b"y" * 100]))

        async def scenario():
            async with _client(handler) as client:
                return await download_source(
                    "http://example.com/guide.xml",
                    tmp_path / "raw",
                    expected_size=100,
                    on_progress=seen.append,
                    client=client,
                )

        result = run(scenario())
        assert result.byte_size == 150
        assert seen == [0.5, 0.99]

    def test_client_error_is_not_retried(self, tmp_path, run, no_backoff):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        async def scenario():
            async with _client(handler) as client:
                await download_source("http://example.com/missing.xml", tmp_path / "raw", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            run(scenario())
        assert len(calls) == 1
        assert no_backoff == []

    def test_server_error_is_retried(self, tmp_path, run, no_backoff):
        responses = iter([httpx.Response(503), httpx.Response(200, content=_stream([b"<tv/>"]))])

        async def scenario():
            async with _client(lambda request: next(responses)) as client:
                return await download_source(
                    "http://example.com/guide.xml",
                    tmp_path / "raw",
                    client=client,
                    backoff_factor=2.0,
                )

        assert run(scenario()).byte_size == 5
        assert no_backoff == [1.0]

    def test_transport_errors_exhaust_retries(self, tmp_path, run, no_backoff):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async def scenario():
            async with _client(handler) as client:
                await download_source(
                    "http://example.com/guide.xml",
                    tmp_path / "raw",
                    client=client,
                    max_retries=3,
                )

        with pytest.raises(httpx.ConnectError):
            run(scenario())
        assert no_backoff == [1.0, 2.0]


class TestDecompression:

    def test_detects_formats(self, tmp_path):
        samples = {
            "gz": (gzip.compress(b"<tv/>"), "gzip"),
            "zz": (zlib.compress(b"<tv/>"), "zlib"),
            "xml": (b"<tv/>", None),
            "empty": (b"", None),
        }
        for name, (payload, expected) in samples.items():
            path = tmp_path / name
            path.write_bytes(payload)
            assert detect_compression(path) == expected, name

    def test_gzip(self, tmp_path):
        source, target = tmp_path / "in", tmp_path / "out"
        data = b"<tv>" + b"<x/>" * 10_000 + b"</tv>"
        source.write_bytes(gzip.compress(data))

        assert decompress_file(source, target, compression="gzip", max_output_bytes=10**6) == len(data)
        assert target.read_bytes() == data

    def test_zlib(self, tmp_path):
        source, target = tmp_path / "in", tmp_path / "out"
        source.write_bytes(zlib.compress(b"<tv/>"))
        decompress_file(source, target, compression="zlib", max_output_bytes=100)
        assert target.read_bytes() == b"<tv/>"

    def test_concatenated_gzip_members(self, tmp_path):
        source, target = tmp_path / "in", tmp_path / "out"
        source.write_bytes(gzip.compress(b"<tv>") + gzip.compress(b"</tv>"))
        decompress_file(source, target, compression="gzip", max_output_bytes=100, chunk_size=7)
        assert target.read_bytes() == b"<tv></tv>"

    def test_zero_length_output_fails(self, tmp_path):
        source = tmp_path / "in"
        source.write_bytes(gzip.compress(b""))
        with pytest.raises(DecompressionError):
            decompress_file(source, tmp_path / "out", compression="gzip", max_output_bytes=100)

    def test_truncated_input_fails(self, tmp_path):
        source = tmp_path / "in"
        source.write_bytes(gzip.compress(b"<tv>" * 1000)[:-12])
        with pytest.raises(DecompressionError):
            decompress_file(source, tmp_path / "out", compression="gzip", max_output_bytes=10**6)

    def test_corrupt_input_fails(self, tmp_path):
        source = tmp_path / "in"
        source.write_bytes(b"\x1f\x8b" + b"\xff" * 64)
        with pytest.raises(DecompressionError):
            decompress_file(source, tmp_path / "out", compression="gzip", max_output_bytes=100)

    def test_output_bound(self, tmp_path):
        source = tmp_path / "in"
        source.write_bytes(gzip.compress(b"0" * 5000))
        with pytest.raises(DecompressionError):
            decompress_file(source, tmp_path / "out", compression="gzip", max_output_bytes=4096)


class TestPreparePayload:

    def test_plain_payload_is_used_in_place(self, tmp_path, run):
        raw = tmp_path / "raw"
        raw.write_bytes(b"<tv/>")
        assert run(prepare_payload(raw, max_output_bytes=100, scratch_dir=tmp_path)) == raw

    def test_gzip_payload_is_inflated_and_raw_removed(self, tmp_path, run):
        raw = tmp_path / "raw"
        raw.write_bytes(gzip.compress(b"<tv/>"))

        inflated = run(prepare_payload(raw, max_output_bytes=100, scratch_dir=tmp_path))

        assert inflated != raw
        assert inflated.read_bytes() == b"<tv/>"
        assert not raw.exists()

    def test_failed_inflate_leaves_no_scratch_file(self, tmp_path, run):
        scratch = tmp_path / "scratch"
        raw = tmp_path / "raw"
        raw.write_bytes(gzip.compress(b""))

        with pytest.raises(DecompressionError):
            run(prepare_payload(raw, max_output_bytes=100, scratch_dir=scratch))
        assert list(scratch.iterdir()) == []


class TestScratchFiles:

    def test_make_and_cleanup(self, tmp_path):
        path = make_scratch_path("epg_test_", tmp_path)
        assert path.exists() and path.name.startswith("epg_test_")
        assert cleanup_temp_file(path) is True
        assert cleanup_temp_file(path) is False
        assert cleanup_temp_file(None) is False
