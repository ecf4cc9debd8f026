"""
Streaming gzip handling for dump payloads.

- write_compressed: dump stdout -> (sha256 of raw bytes, gzip file)
- feed_decompressed: gzip file -> restore program stdin
- scan_diagnostics: split a diagnostic stream into progress and error lines

File I/O runs in worker threads so other executions keep running.
"""

import asyncio
import gzip
import hashlib
import logging
import os
import zlib
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

COMPRESSION_ALGORITHM = 'gzip'
COMPRESSED_EXTENSION = '.gz'
DEFAULT_CHUNK_SIZE = 64 * 1024

# Longest diagnostic line kept in one piece
MAX_DIAGNOSTIC_LINE = 64 * 1024
# Progress lines are cut to this length before they reach the execution log
MAX_LOGGED_LINE = 1000


class CompressionError(Exception):
    """Raised when a payload cannot be compressed or decompressed."""
    pass


async def write_compressed(stream: asyncio.StreamReader, output_path: str,
                           chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """
    Compress a byte stream into a gzip file while hashing it.

    Every chunk read from the stream is fed to the hasher and to the gzip
    writer before the next read; the digest is only returned once the
    stream hit EOF and the file was closed.

    Args:
        stream: Source stream (dump program stdout)
        output_path: Destination .gz file
        chunk_size: Bytes per read

    Returns:
        Hex sha256 digest of the uncompressed bytes

    Raises:
        CompressionError: If the file cannot be written
    """
    hasher = hashlib.sha256()
    gz_file = None

    try:
        gz_file = await asyncio.to_thread(gzip.open, output_path, 'wb')
        while True:
            chunk = await stream.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
            await asyncio.to_thread(gz_file.write, chunk)
        await asyncio.to_thread(gz_file.close)
        gz_file = None

    except OSError as e:
        raise CompressionError(f"Failed to write compressed file {output_path}: {e}") from e

    finally:
        if gz_file is not None:
            gz_file.close()

    return hasher.hexdigest()


async def feed_decompressed(input_path: str, stdin: asyncio.StreamWriter,
                            chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """
    Decompress a gzip file into a program's standard input.

    The writer is closed at the end so the program sees EOF. If the program
    exits early and closes its end of the pipe, feeding stops; its exit code
    tells what happened.

    Returns:
        Number of decompressed bytes written

    Raises:
        CompressionError: If the file is not valid gzip data
    """
    written = 0
    gz_file = await asyncio.to_thread(gzip.open, input_path, 'rb')

    try:
        while True:
            try:
                chunk = await asyncio.to_thread(gz_file.read, chunk_size)
            except (OSError, EOFError, zlib.error) as e:
                raise CompressionError(f"Failed to decompress {input_path}: {e}") from e
            if not chunk:
                break
            stdin.write(chunk)
            await stdin.drain()
            written += len(chunk)

    except (BrokenPipeError, ConnectionResetError):
        logger.warning(f"Restore program closed its input after {written} bytes")

    finally:
        gz_file.close()
        try:
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass

    return written


async def scan_diagnostics(stream: asyncio.StreamReader,
                           on_progress: Optional[Callable[[str], None]] = None,
                           chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """
    Read a diagnostic stream line by line.

    Lines containing "error" (any case) are collected; the rest are passed
    to on_progress. The stream is read in chunks, so lines of any length
    are accepted; a line longer than MAX_DIAGNOSTIC_LINE is handled in
    pieces of that size.

    Returns:
        Collected error lines
    """
    errors = []

    def handle(raw_line: bytes):
        line = raw_line.decode(errors='replace').rstrip()
        if not line:
            return
        if 'error' in line.lower():
            errors.append(line)
        elif on_progress is not None:
            if len(line) > MAX_LOGGED_LINE:
                line = f"{line[:MAX_LOGGED_LINE]}... ({len(line)} chars)"
            on_progress(line)

    pending = b''
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            break
        pending += chunk

        *lines, pending = pending.split(b'\n')
        for raw_line in lines:
            handle(raw_line)

        while len(pending) > MAX_DIAGNOSTIC_LINE:
            handle(pending[:MAX_DIAGNOSTIC_LINE])
            pending = pending[MAX_DIAGNOSTIC_LINE:]

    handle(pending)
    return errors


def remove_partial_file(path: Optional[str]):
    """Delete a file left behind by a failed execution, if any."""
    if path and os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial file {path}: {e}")
