"""Streaming ingest loop: transport lines in, normalized events out."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .console import ConsoleParser, MalformedTelemetryError
from .events import SessionReset, TelemetryEvent
from .transport import TelemetryTransport, TransportError


logger = logging.getLogger(__name__)

EventSink = Callable[[TelemetryEvent], Awaitable[None]]


class TelemetryIngest:
    """Consume a :class:`TelemetryTransport` and hand events to ``sink``.

    A bad line is logged and dropped. Losing the transport emits
    :class:`SessionReset`, then reconnects with exponential backoff.
    """

    def __init__(
        self,
        transport: TelemetryTransport,
        *,
        parser: Optional[ConsoleParser] = None,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
    ):
        self.transport = transport
        self.parser = parser or ConsoleParser()
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.dropped_lines = 0
        self.reconnects = 0
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    @property
    def stopped(self) -> bool:
        return self._stopping.is_set()

    async def run(self, sink: EventSink) -> None:
        backoff = self.initial_backoff
        while not self._stopping.is_set():
            try:
                await self.transport.connect()
                backoff = self.initial_backoff
                async for line in self.transport.lines():
                    await self._handle_line(line, sink)
                    if self._stopping.is_set():
                        break
                else:
                    # Transport ran dry without failing; flush what the parser holds.
                    for event in self.parser.flush():
                        await sink(event)
                    if not self._stopping.is_set():
                        raise TransportError("Telemetry stream ended")
            except TransportError as exc:
                if self._stopping.is_set():
                    break
                self.reconnects += 1
                logger.warning("Telemetry transport lost: %s; reconnecting in %.1fs", exc, backoff)
                self.parser.reset()
                await sink(SessionReset(reason=str(exc)))
                await self._sleep(backoff)
                backoff = min(self.max_backoff, backoff * 2)
            finally:
                await self.transport.close()
        logger.info("Telemetry ingest stopped")

    async def _handle_line(self, line: str, sink: EventSink) -> None:
        try:
            events = self.parser.feed(line)
        except MalformedTelemetryError as exc:
            self.dropped_lines += 1
            logger.warning("Dropping malformed telemetry line (%s)", exc.reason)
            logger.debug("Malformed line: %r", exc.line)
            return
        for event in events:
            await sink(event)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
