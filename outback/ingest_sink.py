"""Append-only receiver for the WebM chunks of one capture session.

The encoder tails this file while it is still growing, so every append is
flushed straight through to the OS and nothing already written is ever
rewritten. No lock is taken on the file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO

from outback.errors import SinkClosedError


class IngestSink:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._log = logging.getLogger("ingest_sink")
        os.makedirs(self.path.parent, exist_ok=True)
        # A new capture always starts a fresh container.
        self._fh: BinaryIO | None = open(self.path, "wb")
        self._bytes_written = 0

    @property
    def closed(self) -> bool:
        return self._fh is None

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    def append(self, data: bytes) -> int:
        """Append ``data`` and return the total number of bytes written so far."""
        fh = self._fh
        if fh is None:
            raise SinkClosedError(f"ingest sink for {self.path} is closed")
        if data:
            fh.write(data)
            fh.flush()
            self._bytes_written += len(data)
        return self._bytes_written

    def close(self) -> None:
        fh = self._fh
        if fh is None:
            return
        self._fh = None
        try:
            fh.flush()
            os.fsync(fh.fileno())
        except OSError as exc:
            self._log.warning("Could not sync %s before close: %s", self.path, exc)
        finally:
            fh.close()
        self._log.debug("Closed %s after %d bytes", self.path, self._bytes_written)
