"""Line transports feeding console output into the ingest loop."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Optional, Protocol


logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when the telemetry source is lost; the ingest loop reconnects."""


class TelemetryTransport(Protocol):
    async def connect(self) -> None:
        ...

    def lines(self) -> AsyncIterator[str]:
        ...

    async def close(self) -> None:
        ...


class LogFileTransport:
    """Follow the game's ``console.log`` the way ``tail -f`` does.

    Reading starts at the current end of the file so that output from earlier
    sessions is not replayed. A file that shrinks or disappears is reported as
    :class:`TransportError`.
    """

    def __init__(self, path: Path, *, poll_interval: float = 0.5, encoding: str = "utf-8"):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self.encoding = encoding
        self._position: Optional[int] = None
        self._partial = b""

    async def connect(self) -> None:
        try:
            self._position = self.path.stat().st_size
        except OSError as exc:
            raise TransportError(f"Cannot open console log {self.path}: {exc}") from exc
        self._partial = b""
        logger.info("Following console log %s from offset %s", self.path, self._position)

    async def close(self) -> None:
        self._position = None
        self._partial = b""

    async def lines(self) -> AsyncIterator[str]:
        if self._position is None:
            raise TransportError("Transport is not connected")
        while self._position is not None:
            chunk = self._read_new()
            if not chunk:
                await asyncio.sleep(self.poll_interval)
                continue
            data = self._partial + chunk
            *complete, self._partial = data.split(b"\n")
            for raw in complete:
                yield raw.decode(self.encoding, errors="replace").rstrip("\r")

    def _read_new(self) -> bytes:
        assert self._position is not None
        try:
            size = self.path.stat().st_size
            if size < self._position:
                raise TransportError(f"Console log {self.path} was truncated")
            if size == self._position:
                return b""
            with self.path.open("rb") as handle:
                handle.seek(self._position)
                chunk = handle.read(size - self._position)
        except OSError as exc:
            raise TransportError(f"Lost console log {self.path}: {exc}") from exc
        self._position += len(chunk)
        return chunk
