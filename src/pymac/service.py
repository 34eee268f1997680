"""Session service wiring telemetry, reputation lookups and the roster together."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from pymac.ingest import TelemetryEvent, TelemetryIngest
from pymac.models import FriendsApiUsage, GameState, PlayerRecord, SteamInfo, Verdict
from pymac.reputation import (
    InvalidCredentialError,
    MissingCredentialError,
    ReputationCache,
    ReputationFetchError,
    ReputationServiceError,
)
from pymac.roster import RosterManager, VerdictResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReputationResolved:
    """Completion of one reputation lookup, delivered back through the update queue."""

    steam_id64: int
    steam_info: Optional[SteamInfo] = None
    error: Optional[ReputationFetchError] = None
    friends_included: bool = False


_Update = Union[TelemetryEvent, ReputationResolved]
_STOP = object()


class RosterService:
    """Own the update queue; the writer task is the only path that merges telemetry and profiles.

    Reputation lookups run as fire-and-forget tasks. Their outcome is queued
    as :class:`ReputationResolved` so ingestion never waits on the network.
    """

    def __init__(
        self,
        roster: RosterManager,
        cache: ReputationCache,
        ingest: Optional[TelemetryIngest] = None,
        *,
        retry_cooldown: float = 30.0,
        friends_api_usage: FriendsApiUsage | str = FriendsApiUsage.CHEATERS_ONLY,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.roster = roster
        self.cache = cache
        self.ingest = ingest
        self.retry_cooldown = retry_cooldown
        self.friends_api_usage = FriendsApiUsage.parse(friends_api_usage)
        self._clock = clock
        self._updates: "asyncio.Queue[Any]" = asyncio.Queue()
        self._fetches: Set[asyncio.Task] = set()
        self._requested: Set[int] = set()
        self._retry_after: Dict[int, float] = {}
        self._awaiting_credential: Set[int] = set()
        # Identities whose current profile was fetched together with the friend list.
        self._friends_known: Set[int] = set()
        self.last_errors: Dict[int, ReputationFetchError] = {}
        self._writer: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    # ---- update queue -----------------------------------------------------

    async def submit(self, event: TelemetryEvent) -> None:
        """Ingest sink: queue a telemetry event for the writer."""

        await self._updates.put(event)

    def start(self) -> None:
        if self._writer is None or self._writer.done():
            self._writer = asyncio.ensure_future(self._write_loop())

    async def _write_loop(self) -> None:
        while True:
            update = await self._updates.get()
            try:
                if update is _STOP:
                    return
                self._apply(update)
            except Exception:
                # One bad update must not stop every later merge.
                logger.exception("Failed to apply update %r", update)
            finally:
                self._updates.task_done()

    def _apply(self, update: _Update) -> None:
        if isinstance(update, ReputationResolved):
            self._apply_reputation(update)
            return
        joined = self.roster.apply_event(update)
        if joined is not None:
            self.request_reputation(joined)

    def _apply_reputation(self, result: ReputationResolved) -> None:
        steam_id = result.steam_id64
        self._requested.discard(steam_id)
        if result.steam_info is not None:
            self._retry_after.pop(steam_id, None)
            self.last_errors.pop(steam_id, None)
            if result.friends_included:
                self._friends_known.add(steam_id)
            else:
                self._friends_known.discard(steam_id)
            self.roster.apply_reputation(steam_id, result.steam_info)
            logger.debug("Applied Steam profile for %s", steam_id)
            return
        error = result.error
        if error is None:
            return
        self.last_errors[steam_id] = error
        if isinstance(error, (MissingCredentialError, InvalidCredentialError)):
            self._awaiting_credential.add(steam_id)
            logger.info("Profile lookup for %s needs a valid API key: %s", steam_id, error)
        else:
            self._retry_after[steam_id] = self._clock() + self.retry_cooldown
            logger.warning("Profile lookup for %s failed: %s", steam_id, error)

    # ---- reputation -------------------------------------------------------

    def request_reputation(self, steam_id64: int, *, force: bool = False) -> bool:
        """Schedule a lookup unless one is pending, cooling down or blocked on the key."""

        if steam_id64 in self._requested:
            return False
        include_friends = self.wants_friends(steam_id64)
        cached = self.cache.cached(steam_id64)
        if cached is not None and include_friends and steam_id64 not in self._friends_known:
            # The memoized profile was fetched without its friend list.
            self.cache.invalidate(steam_id64)
            cached = None
        if cached is not None:
            self._updates.put_nowait(
                ReputationResolved(
                    steam_id64,
                    steam_info=cached,
                    friends_included=steam_id64 in self._friends_known,
                )
            )
            self._requested.add(steam_id64)
            return True
        if not force:
            if steam_id64 in self._awaiting_credential:
                return False
            if self._retry_after.get(steam_id64, 0.0) > self._clock():
                return False
        self._requested.add(steam_id64)
        task = asyncio.ensure_future(self._fetch(steam_id64, include_friends))
        self._fetches.add(task)
        task.add_done_callback(self._fetches.discard)
        return True

    async def _fetch(self, steam_id64: int, include_friends: bool) -> None:
        try:
            info = await self.cache.fetch(steam_id64, include_friends=include_friends)
        except ReputationFetchError as exc:
            await self._updates.put(ReputationResolved(steam_id64, error=exc))
        except Exception as exc:
            # Every outcome goes back through the queue so the id leaves _requested.
            logger.exception("Profile lookup for %s failed unexpectedly", steam_id64)
            error = ReputationServiceError(steam_id64, f"Unexpected lookup failure: {exc!r}")
            await self._updates.put(ReputationResolved(steam_id64, error=error))
        else:
            await self._updates.put(
                ReputationResolved(steam_id64, steam_info=info, friends_included=include_friends)
            )

    def wants_friends(self, steam_id64: int) -> bool:
        """Whether a lookup for ``steam_id64`` should include its friend list."""

        if self.roster.self_steam_id is not None and steam_id64 == self.roster.self_steam_id:
            return True
        if self.friends_api_usage is FriendsApiUsage.NONE:
            return False
        if self.friends_api_usage is FriendsApiUsage.ALL:
            return True
        record = self.roster.get(steam_id64)
        return record is not None and self.friends_api_usage.includes(record.local_verdict)

    def refresh_reputation(self) -> int:
        """Re-request connected players lacking a profile or a wanted friend list.

        Returns how many lookups were scheduled.
        """

        scheduled = sum(1 for steam_id in self.roster.needs_reputation() if self.request_reputation(steam_id))
        for steam_id in self.roster.in_session():
            if self._request_friends(steam_id):
                scheduled += 1
        return scheduled

    def _request_friends(self, steam_id64: int, *, force: bool = False) -> bool:
        if steam_id64 in self._friends_known or not self.wants_friends(steam_id64):
            return False
        return self.request_reputation(steam_id64, force=force)

    def set_friends_api_usage(self, usage: FriendsApiUsage | str) -> int:
        """Change the friend lookup policy and fetch friend lists it newly asks for."""

        self.friends_api_usage = FriendsApiUsage.parse(usage)
        logger.info("Friend list lookups: %s", self.friends_api_usage.value)
        if not self.cache.has_credential:
            return 0
        return sum(1 for steam_id in self.roster.in_session() if self._request_friends(steam_id))

    def set_api_key(self, api_key: Optional[str]) -> int:
        """Replace the Steam Web API key and retry everyone waiting on it."""

        self.cache.set_api_key(api_key)
        self._awaiting_credential.clear()
        if not self.cache.has_credential:
            return 0
        return self.refresh_reputation()

    # ---- judgments and queries ---------------------------------------------

    def apply_verdict(
        self,
        steam_id64: int,
        *,
        verdict: Verdict | str | None = None,
        tags: Optional[Iterable[str]] = None,
        custom_data: Optional[Mapping[str, Any]] = None,
    ) -> VerdictResult:
        """Write a judgment through; a verdict the friend policy covers also fetches the friend list."""

        result = self.roster.apply_verdict(steam_id64, verdict=verdict, tags=tags, custom_data=custom_data)
        if verdict is not None and self.friends_api_usage.includes(result.record.local_verdict):
            if self.cache.has_credential and self._request_friends(steam_id64, force=True):
                logger.debug("Fetching friend list for %s after verdict change", steam_id64)
        return result

    def snapshot(self) -> GameState:
        return self.roster.snapshot()

    def records(self, steam_ids: Iterable[int]) -> List[PlayerRecord]:
        records = []
        for steam_id in steam_ids:
            record = self.roster.get(steam_id)
            if record is not None:
                records.append(record)
        return records

    # ---- lifecycle --------------------------------------------------------

    async def settle(self) -> None:
        """Wait until queued updates and outstanding lookups have all been applied."""

        self.start()
        while True:
            await self._updates.join()
            if not self._fetches:
                break
            await asyncio.gather(*list(self._fetches), return_exceptions=True)

    async def run(self) -> None:
        """Run the writer, telemetry ingest and the periodic lookup retry until stopped."""

        self.start()
        tasks = [asyncio.ensure_future(self._retry_loop())]
        if self.ingest is not None:
            tasks.append(asyncio.ensure_future(self.ingest.run(self.submit)))
        try:
            await self._stopping.wait()
        finally:
            if self.ingest is not None:
                self.ingest.stop()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _retry_loop(self) -> None:
        interval = max(1.0, self.retry_cooldown)
        while not self._stopping.is_set():
            await asyncio.sleep(interval)
            scheduled = self.refresh_reputation()
            if scheduled:
                logger.debug("Retrying %s profile lookup(s)", scheduled)

    def stop(self) -> None:
        self._stopping.set()

    async def close(self) -> None:
        """Let outstanding lookups finish, apply them, then flush unsaved judgments."""

        self.stop()
        if self.ingest is not None:
            self.ingest.stop()
        await self.settle()
        if self._writer is not None:
            await self._updates.put(_STOP)
            await self._writer
            self._writer = None
        self.roster.close()
