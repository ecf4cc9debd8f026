"""
Unit tests for streaming compression (dumpvault/backup/compression.py).

Tests gzip writing with checksums, decompression into a writer and
diagnostic stream scanning.
"""

import asyncio
import gzip
import hashlib

import pytest

from dumpvault.backup.compression import (
    write_compressed,
    feed_decompressed,
    scan_diagnostics,
    remove_partial_file,
    CompressionError,
    MAX_DIAGNOSTIC_LINE
)


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class FakeWriter:
    """Collects bytes like a process stdin pipe."""

    def __init__(self, fail_after=None):
        self.data = bytearray()
        self.closed = False
        self.fail_after = fail_after

    def write(self, chunk):
        if self.fail_after is not None and len(self.data) >= self.fail_after:
            raise BrokenPipeError("pipe closed")
        self.data.extend(chunk)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class TestWriteCompressed:
    """Test write_compressed()."""

    def test_checksum_of_uncompressed_bytes(self, tmp_path):
        """Test checksum is sha256 of the raw stream, file is gzip of it."""
        payload = b"CREATE TABLE t (id int);\n" * 1000
        output = tmp_path / 'dump.sql.gz'

        async def run():
            return await write_compressed(_reader(payload), str(output), chunk_size=100)

        checksum = asyncio.run(run())

        assert checksum == hashlib.sha256(payload).hexdigest()
        assert gzip.decompress(output.read_bytes()) == payload
        assert output.stat().st_size < len(payload)

    def test_empty_stream(self, tmp_path):
        """Test empty stream gives a valid empty gzip file."""
        output = tmp_path / 'empty.dump.gz'

        async def run():
            return await write_compressed(_reader(b''), str(output))

        checksum = asyncio.run(run())

        assert checksum == hashlib.sha256(b'').hexdigest()
        assert gzip.decompress(output.read_bytes()) == b''

    def test_unwritable_path(self, tmp_path):
        """Test writing into a missing directory raises CompressionError."""
        output = tmp_path / 'missing' / 'dump.gz'

        async def run():
            return await write_compressed(_reader(b'data'), str(output))

        with pytest.raises(CompressionError, match='Failed to write compressed file'):
            asyncio.run(run())


class TestFeedDecompressed:
    """Test feed_decompressed()."""

    def test_feeds_decompressed_bytes(self, tmp_path):
        """Test writer receives the original bytes and is closed."""
        payload = b"INSERT INTO t VALUES (1);\n" * 500
        source = tmp_path / 'backup.sql.gz'
        source.write_bytes(gzip.compress(payload))
        writer = FakeWriter()

        written = asyncio.run(feed_decompressed(str(source), writer, chunk_size=256))

        assert written == len(payload)
        assert bytes(writer.data) == payload
        assert writer.closed is True

    def test_corrupt_file_raises(self, tmp_path):
        """Test non-gzip input raises CompressionError."""
        source = tmp_path / 'broken.gz'
        source.write_bytes(b'this is not gzip data')
        writer = FakeWriter()

        with pytest.raises(CompressionError, match='Failed to decompress'):
            asyncio.run(feed_decompressed(str(source), writer))

        assert writer.closed is True

    def test_broken_pipe_stops_feeding(self, tmp_path):
        """Test a reader that went away ends feeding without raising."""
        source = tmp_path / 'backup.sql.gz'
        source.write_bytes(gzip.compress(b'x' * 10000))
        writer = FakeWriter(fail_after=1000)

        written = asyncio.run(feed_decompressed(str(source), writer, chunk_size=500))

        assert written == 1000
        assert writer.closed is True


class TestScanDiagnostics:
    """Test scan_diagnostics()."""

    def test_error_lines_collected(self):
        """Test lines containing 'error' in any case are returned."""
        stream = (
            b"pg_dump: reading extensions\n"
            b"pg_dump: ERROR: permission denied for table secrets\n"
            b"pg_dump: dumping contents of table orders\n"
            b"pg_dump: error: query failed\n"
        )
        progress = []

        async def run():
            return await scan_diagnostics(_reader(stream), progress.append)

        errors = asyncio.run(run())

        assert errors == [
            'pg_dump: ERROR: permission denied for table secrets',
            'pg_dump: error: query failed',
        ]
        assert progress == [
            'pg_dump: reading extensions',
            'pg_dump: dumping contents of table orders',
        ]

    def test_long_lines_accepted(self):
        """Test lines longer than the stream buffer limit do not raise."""
        stream = (
            b"pg_dump: " + b"x" * 200000 + b"\n"
            b"pg_dump: done\n"
        )
        progress = []

        async def run():
            return await scan_diagnostics(_reader(stream), progress.append, chunk_size=4096)

        errors = asyncio.run(run())

        assert errors == []
        assert progress[-1] == 'pg_dump: done'
        assert all(len(line) < 1100 for line in progress)

    def test_error_at_end_of_long_line(self):
        """Test an error word after a long prefix is still found."""
        stream = b"x" * (MAX_DIAGNOSTIC_LINE * 2 + 10) + b" ERROR: out of memory\n"

        async def run():
            return await scan_diagnostics(_reader(stream))

        errors = asyncio.run(run())

        assert len(errors) == 1
        assert errors[0].endswith('ERROR: out of memory')

    def test_last_line_without_newline(self):
        """Test a final line with no trailing newline is scanned."""
        async def run():
            return await scan_diagnostics(_reader(b"ok\nfatal error: disk full"))

        assert asyncio.run(run()) == ['fatal error: disk full']

    def test_no_progress_callback(self):
        """Test scanning works without a progress callback."""
        async def run():
            return await scan_diagnostics(_reader(b"line one\n\nline two\n"))

        assert asyncio.run(run()) == []


class TestRemovePartialFile:
    """Test remove_partial_file()."""

    def test_removes_existing_file(self, tmp_path):
        """Test file is removed."""
        partial = tmp_path / 'partial.gz'
        partial.write_bytes(b'partial')

        remove_partial_file(str(partial))

        assert not partial.exists()

    def test_missing_or_none_is_noop(self, tmp_path):
        """Test missing paths and None are ignored."""
        remove_partial_file(None)
        remove_partial_file(str(tmp_path / 'never_written.gz'))
