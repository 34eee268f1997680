"""Input adapters that normalize game console output into telemetry events."""

from .console import ConsoleParser, MalformedTelemetryError, parse_duration
from .events import (
    PlayerJoined,
    PlayerLeft,
    PlayerStateChanged,
    SessionInfoChanged,
    SessionReset,
    TelemetryEvent,
)
from .telemetry import TelemetryIngest
from .transport import LogFileTransport, TelemetryTransport, TransportError

__all__ = [
    "ConsoleParser",
    "LogFileTransport",
    "MalformedTelemetryError",
    "PlayerJoined",
    "PlayerLeft",
    "PlayerStateChanged",
    "SessionInfoChanged",
    "SessionReset",
    "TelemetryEvent",
    "TelemetryIngest",
    "TelemetryTransport",
    "TransportError",
    "parse_duration",
]
