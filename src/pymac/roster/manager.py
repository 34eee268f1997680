"""Authoritative in-memory roster merged from telemetry, reputation and judgments.

Each source owns a disjoint set of fields:

* telemetry: ``gameInfo``, ``name``, ``isSelf``
* reputation: ``steamInfo``
* local judgment: ``localVerdict``, ``convicted``, ``tags``, ``customData``

so merges never conflict and last-write-wins per field is enough. All state
lives behind one coarse lock; every merge is O(number of fields).
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from pymac.ingest.events import (
    PlayerJoined,
    PlayerLeft,
    PlayerStateChanged,
    SessionInfoChanged,
    SessionReset,
    TelemetryEvent,
)
from pymac.models import GameInfo, GameState, Gamemode, PlayerRecord, SteamInfo, Verdict
from pymac.persistence import PersistenceError, VerdictEntry, VerdictStore


logger = logging.getLogger(__name__)

GAME_INFO_FIELDS = ("team", "ping", "kills", "deaths", "time", "state", "loss")


@dataclass(frozen=True)
class PresenceHistory:
    sessions_seen: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None


def _check_game_fields(game_fields: Mapping[str, Any]) -> None:
    unknown = set(game_fields) - set(GAME_INFO_FIELDS)
    if unknown:
        raise TypeError(f"Unknown game info fields: {', '.join(sorted(unknown))}")


def _merge_game_info(current: Optional[GameInfo], *, userid: str, **game_fields: Any) -> GameInfo:
    """Validated copy of ``current`` with the observed fields applied.

    Raises pydantic's ``ValidationError`` (a ``ValueError``) for values that do
    not fit the scoreboard types.
    """

    merged = current.model_dump() if current is not None else {}
    merged.update(game_fields)
    merged["userid"] = userid
    return GameInfo.model_validate(merged)


ConvictionPolicy = Callable[[Optional[SteamInfo], PresenceHistory, FrozenSet[str]], bool]


@dataclass(frozen=True)
class VerdictResult:
    """Outcome of a judgment change; the in-memory value is applied either way."""

    record: PlayerRecord
    persisted: bool
    error: Optional[PersistenceError] = None


@dataclass
class _Entry:
    steam_id64: int
    name: Optional[str] = None
    is_self: bool = False
    steam_info: Optional[SteamInfo] = None
    game_info: Optional[GameInfo] = None
    custom_data: Dict[str, Any] = field(default_factory=dict)
    local_verdict: Verdict = Verdict.PLAYER
    convicted: bool = False
    tags: FrozenSet[str] = frozenset()
    previous_names: List[str] = field(default_factory=list)
    history: PresenceHistory = field(default_factory=PresenceHistory)
    stored: bool = False


@dataclass
class _SessionInfo:
    map: str = ""
    ip: str = ""
    hostname: str = ""
    max_players: int = 0
    gamemode: Gamemode = field(default_factory=Gamemode)


class RosterManager:
    def __init__(
        self,
        store: VerdictStore,
        *,
        self_steam_id: Optional[int] = None,
        conviction_policy: Optional[ConvictionPolicy] = None,
    ):
        self.store = store
        self.self_steam_id = self_steam_id
        self.conviction_policy = conviction_policy
        self._lock = threading.RLock()
        # Serializes store writes so a later judgment can never be overwritten by an earlier one.
        self._write_lock = threading.Lock()
        self._entries: "OrderedDict[int, _Entry]" = OrderedDict()
        self._judgments: Dict[int, VerdictEntry] = {}
        self._slots: Dict[str, int] = {}
        self._session = _SessionInfo()
        self._pending: set[int] = set()

    # ---- lifecycle ------------------------------------------------------

    def load(self) -> int:
        """Bring persisted judgments into memory; returns how many were loaded."""

        judgments = self.store.load()
        with self._lock:
            self._judgments = dict(judgments)
            for steam_id, entry in self._entries.items():
                judgment = self._judgments.get(steam_id)
                if judgment is not None:
                    self._apply_judgment(entry, judgment)
        logger.info("Loaded %s stored judgments", len(judgments))
        return len(judgments)

    def close(self) -> List[int]:
        """Retry unsaved judgments; returns identities that still could not be saved."""

        failed = self.flush_pending()
        if failed:
            logger.warning(
                "%s judgment(s) could not be saved before exit: %s",
                len(failed),
                ", ".join(str(steam_id) for steam_id in failed),
            )
        return failed

    # ---- telemetry --------------------------------------------------------

    def apply_event(self, event: TelemetryEvent) -> Optional[int]:
        """Merge one telemetry event; returns the SteamID64 that newly entered the session."""

        if isinstance(event, PlayerJoined):
            steam_id = event.steam_id64
            if steam_id is None:
                with self._lock:
                    steam_id = self._slots.get(event.userid)
                if steam_id is None:
                    logger.warning("Dropping join for unresolvable userid %s", event.userid)
                    return None
            try:
                joined = self.upsert_presence(steam_id, userid=event.userid, name=event.name)
            except ValueError as exc:
                logger.warning("Dropping join for %s: %s", steam_id, exc)
                return None
            return steam_id if joined else None
        if isinstance(event, PlayerStateChanged):
            try:
                updated = self.update_presence(event.userid, **event.observed())
            except ValueError as exc:
                logger.warning("Dropping state update for userid %s: %s", event.userid, exc)
                return None
            if not updated:
                logger.warning("Dropping state update for unknown userid %s", event.userid)
            return None
        if isinstance(event, PlayerLeft):
            self.mark_absent_userid(event.userid)
            return None
        if isinstance(event, SessionInfoChanged):
            self.apply_session_info(**event.observed())
            return None
        if isinstance(event, SessionReset):
            logger.info("Session reset: %s", event.reason)
            self.reset_session()
            return None
        raise TypeError(f"Unsupported telemetry event {event!r}")

    def upsert_presence(
        self,
        steam_id64: int,
        *,
        userid: str,
        name: Optional[str] = None,
        **game_fields: Any,
    ) -> bool:
        """Create or merge a player that is part of the active session.

        Returns True when the identity was not in the session before.
        """

        _check_game_fields(game_fields)
        old_name: Optional[str] = None
        with self._lock:
            current = self._entries.get(steam_id64)
            previous = current.game_info if current is not None else None
            # Validate before touching any state.
            game_info = _merge_game_info(previous, userid=userid, **game_fields)
            previous_owner = self._slots.get(userid)
            if previous_owner is not None and previous_owner != steam_id64:
                # Slot reused by a different identity: the previous occupant is gone.
                self._clear_presence(self._entries[previous_owner])
            entry = self._entry(steam_id64)
            now = datetime.now(timezone.utc)
            joined = entry.game_info is None
            if joined:
                entry.history = replace(
                    entry.history,
                    sessions_seen=entry.history.sessions_seen + 1,
                    first_seen=entry.history.first_seen or now,
                )
            elif entry.game_info.userid != game_info.userid:
                self._slots.pop(entry.game_info.userid, None)
            entry.game_info = game_info
            entry.history = replace(entry.history, last_seen=now)
            self._slots[userid] = steam_id64
            if name and name != entry.name:
                if entry.name and entry.name not in entry.previous_names:
                    entry.previous_names.append(entry.name)
                    if entry.stored:
                        old_name = entry.name
                entry.name = name
            self._entries.move_to_end(steam_id64)
        if old_name is not None:
            self._record_name(steam_id64, old_name)
        if joined:
            logger.debug("Player %s joined as userid %s", steam_id64, userid)
        return joined

    def update_presence(self, userid: str, **game_fields: Any) -> bool:
        """Merge scoreboard fields for a session slot; False if the slot is unknown."""

        _check_game_fields(game_fields)
        with self._lock:
            steam_id = self._slots.get(userid)
            if steam_id is None:
                return False
            entry = self._entries[steam_id]
            if entry.game_info is None:
                return False
            entry.game_info = _merge_game_info(entry.game_info, userid=entry.game_info.userid, **game_fields)
            entry.history = replace(entry.history, last_seen=datetime.now(timezone.utc))
            self._entries.move_to_end(steam_id)
        return True

    def mark_absent(self, steam_id64: int) -> bool:
        with self._lock:
            entry = self._entries.get(steam_id64)
            if entry is None or entry.game_info is None:
                return False
            self._clear_presence(entry)
        logger.debug("Player %s left the session", steam_id64)
        return True

    def mark_absent_userid(self, userid: str) -> bool:
        with self._lock:
            steam_id = self._slots.get(userid)
        if steam_id is None:
            return False
        return self.mark_absent(steam_id)

    def apply_session_info(
        self,
        *,
        map: Optional[str] = None,
        ip: Optional[str] = None,
        hostname: Optional[str] = None,
        max_players: Optional[int] = None,
        gamemode: Optional[Gamemode] = None,
    ) -> None:
        with self._lock:
            if map is not None:
                self._session.map = map
            if ip is not None:
                self._session.ip = ip
            if hostname is not None:
                self._session.hostname = hostname
            if max_players is not None:
                self._session.max_players = max_players
            if gamemode is not None:
                self._session.gamemode = gamemode

    def reset_session(self) -> None:
        """Treat every player as disconnected; judgments and profiles are kept."""

        with self._lock:
            for entry in self._entries.values():
                entry.game_info = None
            self._slots.clear()
            self._session = _SessionInfo()

    # ---- reputation -------------------------------------------------------

    def apply_reputation(self, steam_id64: int, steam_info: SteamInfo) -> PlayerRecord:
        """Attach fetched profile data; never brings back ``gameInfo``."""

        with self._lock:
            entry = self._entry(steam_id64)
            entry.steam_info = steam_info
            changed = self._evaluate_conviction(entry)
            record = self._to_record(entry)
        if changed:
            self._persist(steam_id64)
        return record

    # ---- judgments --------------------------------------------------------

    def apply_verdict(
        self,
        steam_id64: int,
        *,
        verdict: Verdict | str | None = None,
        tags: Optional[Iterable[str]] = None,
        convicted: Optional[bool] = None,
        custom_data: Optional[Mapping[str, Any]] = None,
    ) -> VerdictResult:
        """Apply a judgment change in memory and write it through to the store."""

        if custom_data is not None and not isinstance(custom_data, Mapping):
            raise TypeError("custom_data must be a mapping")
        parsed_verdict = Verdict.parse(verdict) if verdict is not None else None
        with self._write_lock:
            with self._lock:
                entry = self._entry(steam_id64)
                if parsed_verdict is not None:
                    entry.local_verdict = parsed_verdict
                if tags is not None:
                    entry.tags = frozenset(tag.strip() for tag in tags if tag and tag.strip())
                if custom_data is not None:
                    entry.custom_data = dict(custom_data)
                if convicted is not None:
                    entry.convicted = bool(convicted)
                elif tags is not None:
                    self._evaluate_conviction(entry)
            error = self._save(steam_id64)
            with self._lock:
                record = self._to_record(entry)
        return VerdictResult(record=record, persisted=error is None, error=error)

    def reset_verdict(self, steam_id64: int) -> VerdictResult:
        return self.apply_verdict(steam_id64, verdict=Verdict.PLAYER, tags=(), convicted=False)

    def flush_pending(self) -> List[int]:
        with self._lock:
            pending = sorted(self._pending)
        failed = []
        for steam_id in pending:
            with self._write_lock:
                if self._save(steam_id) is not None:
                    failed.append(steam_id)
        return failed

    @property
    def pending_writes(self) -> List[int]:
        with self._lock:
            return sorted(self._pending)

    # ---- queries ----------------------------------------------------------

    def snapshot(self) -> GameState:
        """Return an immutable, point-in-time copy of the roster and session."""

        with self._lock:
            players = [self._to_record(entry) for entry in self._entries.values()]
            session = replace(self._session)
        return GameState(
            players=players,
            map=session.map,
            ip=session.ip,
            hostname=session.hostname,
            maxPlayers=session.max_players,
            numPlayers=sum(1 for player in players if player.game_info is not None),
            gamemode=session.gamemode,
        )

    def get(self, steam_id64: int) -> Optional[PlayerRecord]:
        with self._lock:
            entry = self._entries.get(steam_id64)
            if entry is None:
                judgment = self._judgments.get(steam_id64)
                if judgment is None:
                    return None
                entry = self._new_entry(steam_id64)
            return self._to_record(entry)

    def history(self, steam_id64: int) -> Optional[PresenceHistory]:
        with self._lock:
            entry = self._entries.get(steam_id64)
            return entry.history if entry is not None else None

    def in_session(self) -> List[int]:
        with self._lock:
            return [steam_id for steam_id, entry in self._entries.items() if entry.game_info is not None]

    def needs_reputation(self) -> List[int]:
        with self._lock:
            return [
                steam_id
                for steam_id, entry in self._entries.items()
                if entry.game_info is not None and entry.steam_info is None
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, steam_id64: object) -> bool:
        with self._lock:
            return steam_id64 in self._entries

    # ---- internals (call with self._lock held) ------------------------------

    def _entry(self, steam_id64: int) -> _Entry:
        entry = self._entries.get(steam_id64)
        if entry is None:
            entry = self._new_entry(steam_id64)
            self._entries[steam_id64] = entry
        return entry

    def _new_entry(self, steam_id64: int) -> _Entry:
        entry = _Entry(steam_id64=steam_id64, is_self=steam_id64 == self.self_steam_id)
        judgment = self._judgments.get(steam_id64)
        if judgment is not None:
            self._apply_judgment(entry, judgment)
        return entry

    @staticmethod
    def _apply_judgment(entry: _Entry, judgment: VerdictEntry) -> None:
        entry.local_verdict = judgment.local_verdict
        entry.convicted = judgment.convicted
        entry.tags = frozenset(judgment.tags)
        entry.custom_data = dict(judgment.custom_data)
        entry.previous_names = list(judgment.previous_names)
        entry.stored = True

    def _clear_presence(self, entry: _Entry) -> None:
        if entry.game_info is not None:
            self._slots.pop(entry.game_info.userid, None)
        entry.game_info = None

    def _evaluate_conviction(self, entry: _Entry) -> bool:
        if self.conviction_policy is None:
            return False
        convicted = bool(self.conviction_policy(entry.steam_info, entry.history, entry.tags))
        if convicted == entry.convicted:
            return False
        logger.info("Conviction for %s changed to %s", entry.steam_id64, convicted)
        entry.convicted = convicted
        return True

    def _to_record(self, entry: _Entry) -> PlayerRecord:
        name = entry.name or (entry.steam_info.name if entry.steam_info else "") or str(entry.steam_id64)
        return PlayerRecord(
            isSelf=entry.is_self,
            name=name,
            steamID64=entry.steam_id64,
            steamInfo=entry.steam_info,
            gameInfo=entry.game_info,
            customData=dict(entry.custom_data),
            convicted=entry.convicted,
            localVerdict=entry.local_verdict,
            tags=entry.tags,
        )

    # ---- persistence ------------------------------------------------------

    def _record_name(self, steam_id64: int, old_name: str) -> None:
        with self._write_lock:
            try:
                self.store.record_name(steam_id64, old_name)
            except PersistenceError as exc:
                logger.warning("Keeping previous name of %s in memory: %s", steam_id64, exc)
                with self._lock:
                    self._pending.add(steam_id64)

    def _persist(self, steam_id64: int) -> Optional[PersistenceError]:
        with self._write_lock:
            return self._save(steam_id64)

    def _save(self, steam_id64: int) -> Optional[PersistenceError]:
        """Write the identity's current judgment; call with ``_write_lock`` held."""

        with self._lock:
            entry = self._entries.get(steam_id64)
            if entry is None:
                self._pending.discard(steam_id64)
                return None
            fields = dict(
                local_verdict=entry.local_verdict,
                convicted=entry.convicted,
                tags=sorted(entry.tags),
                custom_data=dict(entry.custom_data),
                previous_names=list(entry.previous_names),
            )
        try:
            saved = self.store.save(steam_id64, **fields)
        except PersistenceError as exc:
            logger.warning("Keeping unsaved judgment for %s in memory: %s", steam_id64, exc)
            with self._lock:
                self._pending.add(steam_id64)
            return exc
        with self._lock:
            self._judgments[steam_id64] = saved
            self._pending.discard(steam_id64)
            entry.stored = True
        return None
