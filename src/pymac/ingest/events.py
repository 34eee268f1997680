"""Normalized telemetry events emitted by the ingest layer."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Union

from pymac.models import Gamemode


@dataclass(frozen=True)
class PlayerJoined:
    userid: str
    steam_id64: Optional[int] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class PlayerStateChanged:
    """Scoreboard facts for a session slot; ``None`` means "not observed"."""

    userid: str
    team: Optional[int] = None
    ping: Optional[int] = None
    kills: Optional[int] = None
    deaths: Optional[int] = None
    time: Optional[int] = None
    state: Optional[str] = None
    loss: Optional[int] = None

    def observed(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "userid" and getattr(self, f.name) is not None
        }


@dataclass(frozen=True)
class PlayerLeft:
    userid: str


@dataclass(frozen=True)
class SessionInfoChanged:
    map: Optional[str] = None
    ip: Optional[str] = None
    hostname: Optional[str] = None
    max_players: Optional[int] = None
    gamemode: Optional[Gamemode] = None

    def observed(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass(frozen=True)
class SessionReset:
    reason: str = "transport lost"


TelemetryEvent = Union[PlayerJoined, PlayerStateChanged, PlayerLeft, SessionInfoChanged, SessionReset]
