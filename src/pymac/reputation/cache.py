"""Process-lifetime memo of Steam profile lookups with in-flight deduplication."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Collection, Dict, Optional, Protocol, Sequence, Set

from pymac.models import SteamInfo

from .client import STEAM_BATCH_LIMIT, LookupOutcome
from .errors import FetchTimeoutError, MissingCredentialError, ReputationFetchError, ReputationServiceError
from .ratelimit import TokenBucket


logger = logging.getLogger(__name__)


class SteamInfoFetcher(Protocol):
    api_key: Optional[str]

    async def fetch_steam_infos(
        self,
        steam_ids: Sequence[int],
        *,
        friends_for: Collection[int] = (),
    ) -> Dict[int, LookupOutcome]:
        ...


class ReputationCache:
    """Memoize successful lookups; share one in-flight request per identity.

    Identities requested within ``batch_window`` seconds of each other are
    grouped into one external call of at most ``batch_size`` ids. Dispatch is
    bounded twice: at most ``concurrency`` external calls run at once, and a
    token bucket spaces calls to ``rate_per_sec``. Callers past either limit
    wait their turn, and their ids join the next batch. Failures are never
    cached, so a later :meth:`fetch` dispatches a fresh request.
    """

    def __init__(
        self,
        client: SteamInfoFetcher,
        *,
        concurrency: int = 4,
        rate_per_sec: float = 2.0,
        burst: Optional[float] = None,
        timeout: float = 10.0,
        batch_size: int = STEAM_BATCH_LIMIT,
        batch_window: float = 0.05,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if not 1 <= batch_size <= STEAM_BATCH_LIMIT:
            raise ValueError(f"batch_size must be between 1 and {STEAM_BATCH_LIMIT}")
        self._client = client
        self._cache: Dict[int, SteamInfo] = {}
        self._in_flight: Dict[int, "asyncio.Future[SteamInfo]"] = {}
        # Identities waiting for a batch, mapped to whether their friend list is wanted.
        self._queued: Dict[int, bool] = {}
        self._collector: Optional[asyncio.Task] = None
        self._batches: Set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._bucket = TokenBucket(rate_per_sec, burst if burst is not None else max(1, concurrency))
        self.timeout = timeout
        self.batch_size = batch_size
        self.batch_window = max(0.0, batch_window)
        self.dispatched = 0

    @property
    def has_credential(self) -> bool:
        return bool(self._client.api_key)

    def set_api_key(self, api_key: Optional[str]) -> None:
        self._client.api_key = api_key or None
        logger.info("Steam Web API key %s", "updated" if api_key else "cleared")

    def cached(self, steam_id64: int) -> Optional[SteamInfo]:
        return self._cache.get(steam_id64)

    def invalidate(self, steam_id64: int) -> None:
        self._cache.pop(steam_id64, None)

    def in_flight(self, steam_id64: int) -> bool:
        return steam_id64 in self._in_flight

    async def fetch(self, steam_id64: int, *, include_friends: bool = True) -> SteamInfo:
        """Return the profile for ``steam_id64``, raising :class:`ReputationFetchError` on failure.

        ``include_friends`` only applies when this call starts a new lookup.
        """

        cached = self._cache.get(steam_id64)
        if cached is not None:
            return cached
        future = self._in_flight.get(steam_id64)
        if future is None:
            if not self.has_credential:
                raise MissingCredentialError(steam_id64)
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(_consume_exception)
            self._in_flight[steam_id64] = future
            self._queued[steam_id64] = include_friends
            if self._collector is None or self._collector.done():
                self._collector = asyncio.ensure_future(self._collect())
        # A cancelled caller must not cancel the lookup other callers share.
        return await asyncio.shield(future)

    async def _collect(self) -> None:
        await asyncio.sleep(self.batch_window)
        while self._queued:
            await self._semaphore.acquire()
            try:
                await self._bucket.acquire()
            except BaseException:
                self._semaphore.release()
                raise
            batch = dict(itertools.islice(self._queued.items(), self.batch_size))
            for steam_id in batch:
                del self._queued[steam_id]
            task = asyncio.ensure_future(self._dispatch(batch))
            self._batches.add(task)
            task.add_done_callback(self._batches.discard)

    async def _dispatch(self, batch: Dict[int, bool]) -> None:
        """Run one external call for ``batch``; releases the concurrency slot taken by the collector."""

        results: Dict[int, LookupOutcome] = {}
        try:
            self.dispatched += 1
            logger.debug("Requesting %s Steam profile(s)", len(batch))
            results = await self._request(batch)
        finally:
            self._semaphore.release()
            for steam_id in batch:
                self._resolve(steam_id, results.get(steam_id))

    async def _request(self, batch: Dict[int, bool]) -> Dict[int, LookupOutcome]:
        steam_ids = list(batch)
        friends_for = [steam_id for steam_id, wanted in batch.items() if wanted]
        try:
            return await asyncio.wait_for(
                self._client.fetch_steam_infos(steam_ids, friends_for=friends_for),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            failure: ReputationFetchError = FetchTimeoutError(
                None, f"Profile lookup exceeded {self.timeout:.1f}s"
            )
        except ReputationFetchError as exc:
            failure = exc
        except Exception as exc:
            logger.exception("Profile lookup for %s id(s) failed unexpectedly", len(steam_ids))
            failure = ReputationServiceError(None, f"Unexpected lookup failure: {exc!r}")
        return {steam_id: failure.for_identity(steam_id) for steam_id in steam_ids}

    def _resolve(self, steam_id64: int, outcome: Optional[LookupOutcome]) -> None:
        future = self._in_flight.pop(steam_id64, None)
        if future is None or future.done():
            return
        if isinstance(outcome, SteamInfo):
            self._cache[steam_id64] = outcome
            future.set_result(outcome)
            return
        if not isinstance(outcome, ReputationFetchError):
            outcome = ReputationServiceError(steam_id64, f"No profile returned for {steam_id64}")
        future.set_exception(outcome.for_identity(steam_id64))


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
