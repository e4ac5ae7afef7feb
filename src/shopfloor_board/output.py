"""Sinks for the ``watch`` change log.

StdoutSink
    Raw NDJSON bytes on ``sys.stdout.buffer`` (pipe into ``jq`` & co).

FileSink
    Appends to ``{prefix}-{client_id}-{timestamp}.ndjson.active`` and
    rotates on age or size: flush, ``fsync``, rename to ``.ndjson``, open
    a fresh ``.active`` file.  Completed files are never touched again;
    retention is left to whatever collects them.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from shopfloor_board.config import FileOutputConfig

logger = logging.getLogger(__name__)


class Sink(Protocol):
    def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class StdoutSink:
    """Write NDJSON lines to stdout."""

    def write(self, data: bytes) -> None:
        """Raises :class:`BrokenPipeError` once the reader has gone away."""
        try:
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            logger.warning("stdout closed by reader")
            raise

    def close(self) -> None:
        pass


class FileSink:
    """Rotating NDJSON change log.

    Parameters
    ----------
    output_dir:
        Directory for the log files; created if missing.
    prefix:
        Filename prefix.
    client_id:
        Board client id, part of every filename.
    rotation_seconds, rotation_bytes:
        Rotate once the active file is this old or this large.
    flush_every_n, flush_interval_ms:
        Flush after this many lines or this much time.
    """

    def __init__(
        self,
        output_dir: str,
        prefix: str = "changes",
        client_id: str = "board-01",
        rotation_seconds: int = 600,
        rotation_bytes: int = 52428800,
        flush_every_n: int = 50,
        flush_interval_ms: int = 1000,
    ) -> None:
        self._dir = Path(output_dir).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._prefix = prefix
        self._client_id = client_id
        self._rotation_seconds = rotation_seconds
        self._rotation_bytes = rotation_bytes
        self._flush_every_n = flush_every_n
        self._flush_interval = flush_interval_ms / 1000.0

        self._fh = None
        self._active: Optional[Path] = None
        self._final: Optional[Path] = None
        self._size = 0
        self._unflushed = 0
        self._opened_at = 0.0
        self._flushed_at = 0.0
        self._seq = 0
        self._open()

    @classmethod
    def from_config(cls, config: FileOutputConfig, client_id: str) -> "FileSink":
        return cls(
            output_dir=config.output_dir,
            prefix=config.file_prefix,
            client_id=client_id,
            rotation_seconds=config.rotation.interval_seconds,
            rotation_bytes=config.rotation.max_size_bytes,
            flush_every_n=config.flush.every_n_events,
            flush_interval_ms=config.flush.interval_ms,
        )

    def write(self, data: bytes) -> None:
        now = time.monotonic()
        if self._size >= self._rotation_bytes or now - self._opened_at >= self._rotation_seconds:
            self._finish()
            self._open()

        self._fh.write(data)
        self._size += len(data)
        self._unflushed += 1
        if self._unflushed >= self._flush_every_n or now - self._flushed_at >= self._flush_interval:
            self._flush()

    def close(self) -> None:
        """Finish the active file on shutdown."""
        if self._fh and not self._fh.closed:
            self._finish()

    def _open(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        self._seq += 1
        base = f"{self._prefix}-{self._client_id}-{stamp}-{self._seq:03d}"
        self._active = self._dir / f"{base}.ndjson.active"
        self._final = self._dir / f"{base}.ndjson"
        self._fh = open(self._active, "ab")
        self._size = 0
        self._unflushed = 0
        self._opened_at = self._flushed_at = time.monotonic()
        logger.info("Writing changes to %s", self._active.name)

    def _finish(self) -> None:
        self._flush()
        os.fsync(self._fh.fileno())
        self._fh.close()
        os.rename(self._active, self._final)
        logger.info("Completed %s (%d bytes)", self._final.name, self._size)

    def _flush(self) -> None:
        if self._fh and not self._fh.closed:
            self._fh.flush()
            self._unflushed = 0
            self._flushed_at = time.monotonic()
