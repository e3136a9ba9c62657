"""
File operation utilities

This module handles source downloads with byte-level progress, payload
decompression and scratch file management.
"""
import asyncio
import logging
import os
import tempfile
import zlib
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable

import aiofiles
import httpx

from epg_aggregator.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
ZLIB_HEADERS = (b"\x78\x01", b"\x78\x5e", b"\x78\x9c", b"\x78\xda")

DEFAULT_EXPECTED_SIZE = 10_000_000
DOWNLOAD_PROGRESS_CAP = 0.99
_DECOMPRESS_STEP = 1024 * 1024


class SourceFetchError(RuntimeError):
    """Raised when a source cannot be turned into a local XML payload"""
    pass


class DecompressionError(SourceFetchError):
    """Raised when a compressed payload is corrupt, empty or too large"""
    pass


@dataclass(slots=True)
class DownloadResult:
    path: Path
    byte_size: int
    content_length: int | None = None


def make_scratch_path(prefix: str, scratch_dir: str | Path | None = None) -> Path:
    """
    Reserve a unique scratch file

    Args:
        prefix: File name prefix
        scratch_dir: Directory to use (system temp directory when None)

    Returns:
        Path to an empty file owned by the caller
    """
    directory = Path(scratch_dir) if scratch_dir else Path(tempfile.gettempdir())
    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=prefix, dir=directory)
    os.close(fd)
    return Path(name)


def effective_expected_size(
    content_length: int | None,
    expected_size: int | None,
    fallback_size: int = DEFAULT_EXPECTED_SIZE
) -> int:
    """Pick the divisor for download progress: server length, then history, then fallback."""
    if content_length and content_length > 0:
        return content_length
    if expected_size and expected_size > 0:
        return expected_size
    return max(1, fallback_size)


def _parse_content_length(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@asynccontextmanager
async def _client_scope(
    client: httpx.AsyncClient | None,
    timeout: httpx.Timeout
) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned:
        yield owned


async def download_source(
    url: str,
    destination: Path,
    *,
    expected_size: int | None = None,
    on_progress: Callable[[float], None] | None = None,
    client: httpx.AsyncClient | None = None,
    connect_timeout: float = 30.0,
    read_timeout: float = 60.0,
    max_retries: int = 3,
    backoff_factor: float = 2.0,
    fallback_size: int = DEFAULT_EXPECTED_SIZE
) -> DownloadResult:
    """
    Stream a source to disk with exponential backoff retry logic

    Retries on transient network errors (timeouts, connection errors) and 5xx.
    Does NOT retry on 4xx HTTP errors (client errors).

    The raw body is written as received, so compressed feeds stay compressed
    here. Progress is reported as min(received / expected, 0.99) after every
    chunk; the last percent is left for the parse phase.

    Args:
        url: URL to download from
        destination: Scratch file to write the body into
        expected_size: Size observed on a previous run, used when the server
            sends no usable Content-Length
        on_progress: Called with the download fraction after each chunk
        client: Shared HTTP client; a short-lived one is created when None
        connect_timeout: Connect timeout in seconds
        read_timeout: Per-read timeout in seconds
        max_retries: Maximum number of attempts
        backoff_factor: Exponential backoff multiplier (wait = backoff_factor ^ attempt)
        fallback_size: Divisor used when neither server nor history knows the size

    Returns:
        DownloadResult with the number of bytes written

    Raises:
        httpx.HTTPError: If download fails after all retries
    """
    safe_url = sanitize_url(url)
    timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
    attempts = max(1, max_retries)
    last_error: Exception | None = None

    for attempt in range(attempts):
        try:
            async with _client_scope(client, timeout) as http:
                async with http.stream("GET", url, headers={"Accept-Encoding": "gzip"}) as response:
                    response.raise_for_status()

                    content_length = _parse_content_length(response.headers.get("Content-Length"))
                    total = effective_expected_size(content_length, expected_size, fallback_size)
                    received = 0

                    async with aiofiles.open(destination, "wb") as f:
                        async for chunk in response.aiter_raw():
                            if not chunk:
                                continue
                            await f.write(chunk)
                            received += len(chunk)
                            if on_progress is not None:
                                on_progress(min(received / total, DOWNLOAD_PROGRESS_CAP))

            logger.info(f"Downloaded {received / (1024 * 1024):.2f} MB from {safe_url}")
            return DownloadResult(path=destination, byte_size=received, content_length=content_length)

        except (httpx.TimeoutException, httpx.TransportError) as e:
            last_error = e
            if attempt < attempts - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    "Download attempt %s/%s for %s failed (transient error): %s. Retrying in %.1fs...",
                    attempt + 1,
                    attempts,
                    safe_url,
                    type(e).__name__,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error("Download of %s failed after %s attempts (transient error)", safe_url, attempts)

        except httpx.HTTPStatusError as e:
            if 400 <= e.response.status_code < 500:
                logger.error("HTTP %s (client error) for %s", e.response.status_code, safe_url)
                raise

            last_error = e
            if attempt < attempts - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    "Download attempt %s/%s for %s failed (HTTP %s server error). Retrying in %.1fs...",
                    attempt + 1,
                    attempts,
                    safe_url,
                    e.response.status_code,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(
                    "Download of %s failed after %s attempts (HTTP %s)",
                    safe_url,
                    attempts,
                    e.response.status_code,
                )

    if last_error:
        raise last_error

    raise SourceFetchError(f"Failed to download {safe_url} after {attempts} attempts")


def detect_compression(file_path: Path) -> str | None:
    """
    Sniff the payload format from its first bytes

    Returns:
        'gzip', 'zlib' or None for anything else (treated as plain XML)
    """
    with open(file_path, "rb") as handle:
        head = handle.read(2)
    if head == GZIP_MAGIC:
        return "gzip"
    if head in ZLIB_HEADERS:
        return "zlib"
    return None


def decompress_file(
    source: Path,
    destination: Path,
    *,
    compression: str,
    max_output_bytes: int,
    chunk_size: int = _DECOMPRESS_STEP
) -> int:
    """
    Inflate a gzip or zlib file into destination without exceeding a size bound

    Concatenated gzip members are inflated in sequence.

    Returns:
        Number of bytes written

    Raises:
        DecompressionError: On corrupt or truncated input, zero output, or
            output larger than max_output_bytes
    """
    wbits = 31 if compression == "gzip" else 15
    decompressor = zlib.decompressobj(wbits)
    written = 0

    def emit(data: bytes) -> None:
        nonlocal written
        if not data:
            return
        written += len(data)
        if written > max_output_bytes:
            raise DecompressionError(
                f"Decompressed payload exceeds {max_output_bytes} bytes"
            )
        dst.write(data)

    try:
        with open(source, "rb") as src, open(destination, "wb") as dst:
            while True:
                pending = src.read(chunk_size)
                if not pending:
                    break
                while pending:
                    emit(decompressor.decompress(pending, _DECOMPRESS_STEP))
                    pending = decompressor.unconsumed_tail
                    if decompressor.eof:
                        leftover = decompressor.unused_data + pending
                        if compression != "gzip" or not leftover.startswith(GZIP_MAGIC):
                            pending = b""
                            break
                        decompressor = zlib.decompressobj(wbits)
                        pending = leftover
                if decompressor.eof and compression != "gzip":
                    break
            emit(decompressor.flush())
    except zlib.error as e:
        raise DecompressionError(f"Corrupt {compression} payload: {e}") from e

    if not decompressor.eof:
        raise DecompressionError(f"Truncated {compression} payload")
    if written == 0:
        raise DecompressionError("Decompression yielded zero bytes")

    return written


async def prepare_payload(
    raw_path: Path,
    *,
    max_output_bytes: int,
    scratch_dir: str | Path | None = None
) -> Path:
    """
    Return a path to plain XML for a downloaded payload

    Compressed payloads are inflated into a new scratch file on a worker
    thread and the raw file is removed; plain payloads are returned as-is.
    """
    loop = asyncio.get_running_loop()
    compression = await loop.run_in_executor(None, detect_compression, raw_path)
    if compression is None:
        return raw_path

    inflated = make_scratch_path("epg_inflated_", scratch_dir)
    try:
        size = await loop.run_in_executor(
            None,
            lambda: decompress_file(
                raw_path,
                inflated,
                compression=compression,
                max_output_bytes=max_output_bytes,
            ),
        )
    except BaseException:
        cleanup_temp_file(inflated)
        raise

    logger.debug(
        "Inflated %s payload %s -> %.2f MB",
        compression,
        raw_path.name,
        size / (1024 * 1024),
    )
    cleanup_temp_file(raw_path)
    return inflated


def cleanup_temp_file(file_path: Path | None) -> bool:
    """
    Safely delete a temporary file

    Args:
        file_path: Path to file to delete

    Returns:
        True if deleted successfully, False otherwise
    """
    if not file_path or not file_path.exists():
        return False

    try:
        file_path.unlink()
        logger.debug(f"Cleaned up temporary file: {file_path}")
        return True
    except (OSError, PermissionError) as e:
        logger.warning(f"Failed to delete temporary file {file_path}: {e}")
        return False
