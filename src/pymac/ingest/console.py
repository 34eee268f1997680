"""Translate game console output into normalized telemetry events.

Recognised output:

* ``status`` tables (header line, one ``# userid "name" [U:1:N] ...`` line per
  player). When a table ends, every userid present in the previous table but
  missing from this one is reported as having left.
* ``hostname:``, ``udp/ip  :``, ``map     :`` and ``players :`` lines.
* ``g15_dumpplayer`` blocks (``m_iPing[3] integer (45)``), accumulated per
  scoreboard slot and flushed once the block ends.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from pymac.models import Gamemode, account_id_to_steam_id64, steam3_to_steam_id64

from .events import (
    PlayerJoined,
    PlayerLeft,
    PlayerStateChanged,
    SessionInfoChanged,
    TelemetryEvent,
)


logger = logging.getLogger(__name__)

MAX_SCOREBOARD_SLOTS = 101

REGEX_STATUS = re.compile(
    r'^#\s*(\d+)\s"(.*)"\s+(\[U:\d:\d+\])\s+((?:[\ds]+:?)+)\s+(\d+)\s*(\d+)\s*(\w+).*$'
)
REGEX_STATUS_PREFIX = re.compile(r'^#\s*\d+\s+"')
# Bot rows have no SteamID: `#      3 "Bot01"   BOT   active`
REGEX_STATUS_BOT = re.compile(r'^#\s*\d+\s+".*"\s+BOT\b')
REGEX_STATUS_HEADER = re.compile(r"^#\s*userid\s+name\s+uniqueid")
REGEX_HOSTNAME = re.compile(r"^hostname: (.*)$")
REGEX_IP = re.compile(r"^udp/ip  : (.*)$")
REGEX_MAP = re.compile(r"^map     : (.+) at: .*$")
REGEX_PLAYERCOUNT = re.compile(r"^players : (\d+) humans, (\d+) bots \((\d+) max\)$")
REGEX_G15 = re.compile(r"^m_(\w+)\[(\d+)\]\s+(integer|bool|string|float)\s+\((.*)\)$")

MATCHMAKING_HOSTNAME_PREFIX = "Valve Matchmaking Server"

_MAP_PREFIX_GAMEMODES = {
    "arena": "Arena",
    "cp": "Control Point",
    "ctf": "Capture the Flag",
    "koth": "King of the Hill",
    "mvm": "Mann vs. Machine",
    "pass": "PASS Time",
    "pd": "Player Destruction",
    "pl": "Payload",
    "plr": "Payload Race",
    "rd": "Robot Destruction",
    "sd": "Special Delivery",
    "tc": "Territorial Control",
    "tr": "Training",
    "vsh": "Versus Saxton Hale",
    "zi": "Zombie Infection",
}


class MalformedTelemetryError(ValueError):
    """Raised for a console line that looks like known output but cannot be decoded."""

    def __init__(self, line: str, reason: str):
        super().__init__(f"{reason}: {line!r}")
        self.line = line
        self.reason = reason


def parse_duration(text: str) -> int:
    """Convert ``57:48`` or ``1:14:46`` into seconds; unparseable values give 0."""

    total = 0
    for part in text.split(":"):
        if not part.isdigit():
            return 0
        total = total * 60 + int(part)
    return total


def gamemode_for(map_name: str, hostname: str | None) -> Gamemode:
    prefix = map_name.split("_", 1)[0].lower() if "_" in map_name else ""
    matchmaking = bool(hostname and hostname.startswith(MATCHMAKING_HOSTNAME_PREFIX))
    return Gamemode(
        matchmaking=matchmaking,
        type=_MAP_PREFIX_GAMEMODES.get(prefix, "Unknown"),
        vanilla=matchmaking,
    )


@dataclass
class _ScoreboardSlot:
    name: Optional[str] = None
    userid: Optional[int] = None
    account_id: Optional[int] = None
    ping: Optional[int] = None
    score: Optional[int] = None
    deaths: Optional[int] = None
    team: Optional[int] = None
    connected: Optional[bool] = None
    valid: Optional[bool] = None


class ConsoleParser:
    """Stateful line parser; feed it console lines in order."""

    def __init__(self) -> None:
        self._status_current: Optional[Set[str]] = None
        self._status_previous: Optional[Set[str]] = None
        self._g15_slots: Dict[int, _ScoreboardSlot] = {}
        self._hostname: Optional[str] = None

    def reset(self) -> None:
        """Forget table and scoreboard tracking, e.g. after the session was lost."""

        self._status_current = None
        self._status_previous = None
        self._g15_slots = {}
        self._hostname = None

    def feed(self, line: str) -> List[TelemetryEvent]:
        """Parse one console line, returning the events it completes.

        Raises :class:`MalformedTelemetryError` when the line resembles a known
        record but cannot be decoded; parser state stays consistent so the
        caller can simply drop the line and carry on.
        """

        line = line.rstrip("\r\n")
        events: List[TelemetryEvent] = []

        g15 = REGEX_G15.match(line)
        if g15:
            self._feed_g15(line, g15)
            return events
        if self._g15_slots:
            events.extend(self._flush_g15())

        if REGEX_STATUS_HEADER.match(line):
            events.extend(self._finish_status_table())
            self._status_current = set()
            return events

        if REGEX_STATUS_PREFIX.match(line):
            events.extend(self._parse_status(line))
            return events

        events.extend(self._finish_status_table())
        events.extend(self._parse_session_line(line))
        return events

    def flush(self) -> List[TelemetryEvent]:
        """Complete any pending scoreboard block or status table."""

        events: List[TelemetryEvent] = []
        if self._g15_slots:
            events.extend(self._flush_g15())
        events.extend(self._finish_status_table())
        return events

    # ---- status tables -------------------------------------------------

    def _parse_status(self, line: str) -> List[TelemetryEvent]:
        match = REGEX_STATUS.match(line)
        if match is None:
            if REGEX_STATUS_BOT.match(line):
                return []
            raise MalformedTelemetryError(line, "unrecognised status line")
        userid, name, steam3, connected, ping, loss, state = match.groups()
        try:
            steam_id = steam3_to_steam_id64(steam3)
        except ValueError as exc:
            raise MalformedTelemetryError(line, str(exc)) from None
        if self._status_current is None:
            self._status_current = set()
        self._status_current.add(userid)
        return [
            PlayerJoined(userid=userid, steam_id64=steam_id, name=name or None),
            PlayerStateChanged(
                userid=userid,
                ping=int(ping),
                loss=int(loss),
                time=parse_duration(connected),
                state="Spawning" if state == "spawning" else "Active",
            ),
        ]

    def _finish_status_table(self) -> List[TelemetryEvent]:
        if self._status_current is None:
            return []
        current = self._status_current
        previous = self._status_previous
        self._status_previous = current
        self._status_current = None
        if previous is None:
            return []
        return [PlayerLeft(userid=userid) for userid in sorted(previous - current)]

    # ---- session info ---------------------------------------------------

    def _parse_session_line(self, line: str) -> List[TelemetryEvent]:
        match = REGEX_HOSTNAME.match(line)
        if match:
            self._hostname = match.group(1).strip()
            return [SessionInfoChanged(hostname=self._hostname)]
        match = REGEX_IP.match(line)
        if match:
            return [SessionInfoChanged(ip=match.group(1).strip())]
        match = REGEX_MAP.match(line)
        if match:
            map_name = match.group(1).strip()
            return [SessionInfoChanged(map=map_name, gamemode=gamemode_for(map_name, self._hostname))]
        match = REGEX_PLAYERCOUNT.match(line)
        if match:
            return [SessionInfoChanged(max_players=int(match.group(3)))]
        return []

    # ---- g15_dumpplayer -------------------------------------------------

    def _feed_g15(self, line: str, match: re.Match[str]) -> None:
        field_name, raw_index, kind, raw_value = match.groups()
        index = int(raw_index)
        if index >= MAX_SCOREBOARD_SLOTS:
            raise MalformedTelemetryError(line, f"scoreboard slot {index} out of range")
        try:
            value = self._g15_value(kind, raw_value)
        except ValueError:
            raise MalformedTelemetryError(line, f"bad {kind} value") from None
        slot = self._g15_slots.setdefault(index, _ScoreboardSlot())
        if field_name == "szName":
            slot.name = value
        elif field_name == "iUserID":
            slot.userid = value
        elif field_name == "iAccountID":
            slot.account_id = value
        elif field_name == "iPing":
            slot.ping = value
        elif field_name == "iScore":
            slot.score = value
        elif field_name == "iDeaths":
            slot.deaths = value
        elif field_name == "iTeam":
            if value not in (0, 1, 2, 3):
                raise MalformedTelemetryError(line, f"team {value} out of range")
            slot.team = value
        elif field_name == "bConnected":
            slot.connected = value
        elif field_name == "bValid":
            slot.valid = value

    @staticmethod
    def _g15_value(kind: str, raw: str):
        if kind == "integer":
            return int(raw)
        if kind == "bool":
            if raw not in ("true", "false"):
                raise ValueError(raw)
            return raw == "true"
        if kind == "float":
            return float(raw)
        return raw

    def _flush_g15(self) -> List[TelemetryEvent]:
        slots, self._g15_slots = self._g15_slots, {}
        events: List[TelemetryEvent] = []
        for index in sorted(slots):
            slot = slots[index]
            if not (slot.connected or slot.valid) or not slot.userid:
                continue
            if not slot.account_id:
                # Bots and the SourceTV slot carry account id 0.
                continue
            userid = str(slot.userid)
            try:
                steam_id = account_id_to_steam_id64(slot.account_id)
            except ValueError:
                logger.warning("Ignoring scoreboard slot %s with account id %s", index, slot.account_id)
                continue
            events.append(PlayerJoined(userid=userid, steam_id64=steam_id, name=slot.name or None))
            events.append(
                PlayerStateChanged(
                    userid=userid,
                    team=slot.team,
                    ping=slot.ping,
                    kills=slot.score,
                    deaths=slot.deaths,
                )
            )
        return events
