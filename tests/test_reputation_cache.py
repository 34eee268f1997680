import asyncio

import pytest

from pymac.reputation import (
    FetchTimeoutError,
    MissingCredentialError,
    RateLimitedError,
    ReputationCache,
    ReputationServiceError,
)


STEAM_ID = 76561198000000001


class FakeFetcher:
    def __init__(self, make_steam_info, api_key="KEY"):
        self.api_key = api_key
        self.make_steam_info = make_steam_info
        self.calls = []
        self.batches = []
        self.friends_for = []
        self.gate = None
        self.delay = 0.0
        self.failures = []

    async def fetch_steam_infos(self, steam_ids, *, friends_for=()):
        self.calls.extend(steam_ids)
        self.batches.append(list(steam_ids))
        self.friends_for.append(set(friends_for))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return {steam_id: self.make_steam_info(f"player{steam_id % 1000}") for steam_id in steam_ids}


@pytest.mark.anyio
async def test_concurrent_fetches_share_one_dispatch(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    fetcher.gate = asyncio.Event()
    cache = ReputationCache(fetcher, concurrency=4, rate_per_sec=100)

    tasks = [asyncio.ensure_future(cache.fetch(STEAM_ID)) for _ in range(5)]
    await asyncio.sleep(0.01)
    assert cache.in_flight(STEAM_ID)
    fetcher.gate.set()
    results = await asyncio.gather(*tasks)

    assert fetcher.calls == [STEAM_ID]
    assert cache.dispatched == 1
    assert all(result == results[0] for result in results)
    assert not cache.in_flight(STEAM_ID)


@pytest.mark.anyio
async def test_success_is_memoized(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    cache = ReputationCache(fetcher, rate_per_sec=100)

    first = await cache.fetch(STEAM_ID)
    second = await cache.fetch(STEAM_ID)

    assert first is second
    assert len(fetcher.calls) == 1
    assert cache.cached(STEAM_ID) is first

    cache.invalidate(STEAM_ID)
    await cache.fetch(STEAM_ID)
    assert len(fetcher.calls) == 2


@pytest.mark.anyio
async def test_failure_is_not_cached_and_retry_succeeds(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    fetcher.failures = [RateLimitedError(STEAM_ID, "slow down")]
    cache = ReputationCache(fetcher, rate_per_sec=100)

    with pytest.raises(RateLimitedError):
        await cache.fetch(STEAM_ID)
    assert cache.cached(STEAM_ID) is None

    info = await cache.fetch(STEAM_ID)

    assert info.name == "player1"
    assert fetcher.calls == [STEAM_ID, STEAM_ID]


@pytest.mark.anyio
async def test_missing_credential_fails_without_dispatch(make_steam_info):
    fetcher = FakeFetcher(make_steam_info, api_key=None)
    cache = ReputationCache(fetcher, rate_per_sec=100)

    with pytest.raises(MissingCredentialError):
        await cache.fetch(STEAM_ID)
    assert fetcher.calls == []
    assert not cache.has_credential

    cache.set_api_key("NEWKEY")
    assert cache.has_credential
    await cache.fetch(STEAM_ID)
    assert fetcher.calls == [STEAM_ID]


@pytest.mark.anyio
async def test_hung_call_times_out_and_frees_the_slot(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    fetcher.delay = 5.0
    cache = ReputationCache(fetcher, concurrency=1, rate_per_sec=100, timeout=0.05)

    with pytest.raises(FetchTimeoutError):
        await cache.fetch(STEAM_ID)
    assert not cache.in_flight(STEAM_ID)

    fetcher.delay = 0.0
    info = await asyncio.wait_for(cache.fetch(STEAM_ID), timeout=1)
    assert info is cache.cached(STEAM_ID)


@pytest.mark.anyio
async def test_saturated_budget_queues_instead_of_failing(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    fetcher.gate = asyncio.Event()
    cache = ReputationCache(fetcher, concurrency=1, rate_per_sec=100, batch_size=1, batch_window=0)
    other = STEAM_ID + 1

    first = asyncio.ensure_future(cache.fetch(STEAM_ID))
    second = asyncio.ensure_future(cache.fetch(other))
    await asyncio.sleep(0.02)
    assert fetcher.calls == [STEAM_ID]

    fetcher.gate.set()
    await asyncio.gather(first, second)

    assert fetcher.calls == [STEAM_ID, other]
    assert cache.dispatched == 2


@pytest.mark.anyio
async def test_cancelled_caller_does_not_cancel_shared_lookup(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    fetcher.gate = asyncio.Event()
    cache = ReputationCache(fetcher, rate_per_sec=100)

    impatient = asyncio.ensure_future(cache.fetch(STEAM_ID))
    patient = asyncio.ensure_future(cache.fetch(STEAM_ID))
    await asyncio.sleep(0.01)
    impatient.cancel()
    fetcher.gate.set()

    info = await patient

    assert info.name == "player1"
    assert impatient.cancelled()
    assert fetcher.calls == [STEAM_ID]


@pytest.mark.anyio
async def test_ids_requested_together_share_one_batch(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    cache = ReputationCache(fetcher, rate_per_sec=100)
    other = STEAM_ID + 1

    first, second = await asyncio.gather(
        cache.fetch(STEAM_ID, include_friends=False),
        cache.fetch(other, include_friends=True),
    )

    assert fetcher.batches == [[STEAM_ID, other]]
    assert fetcher.friends_for == [{other}]
    assert cache.dispatched == 1
    assert first.name == "player1"
    assert second.name == "player2"


@pytest.mark.anyio
async def test_batches_respect_batch_size(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    cache = ReputationCache(fetcher, rate_per_sec=100, batch_size=2)
    steam_ids = [STEAM_ID + offset for offset in range(5)]

    await asyncio.gather(*(cache.fetch(steam_id) for steam_id in steam_ids))

    assert [len(batch) for batch in fetcher.batches] == [2, 2, 1]
    assert sorted(fetcher.calls) == steam_ids


@pytest.mark.anyio
async def test_batch_failure_is_attributed_to_each_identity(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    fetcher.failures = [RateLimitedError(None, "slow down")]
    cache = ReputationCache(fetcher, rate_per_sec=100)
    other = STEAM_ID + 1

    results = await asyncio.gather(cache.fetch(STEAM_ID), cache.fetch(other), return_exceptions=True)

    assert all(isinstance(result, RateLimitedError) for result in results)
    assert [result.steam_id64 for result in results] == [STEAM_ID, other]


@pytest.mark.anyio
async def test_unexpected_fetcher_error_becomes_service_error(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    fetcher.failures = [AttributeError("'list' object has no attribute 'get'")]
    cache = ReputationCache(fetcher, rate_per_sec=100)

    with pytest.raises(ReputationServiceError) as excinfo:
        await cache.fetch(STEAM_ID)

    assert excinfo.value.steam_id64 == STEAM_ID
    assert not cache.in_flight(STEAM_ID)
    info = await cache.fetch(STEAM_ID)
    assert info.name == "player1"


@pytest.mark.anyio
async def test_identity_missing_from_batch_result_fails_alone(make_steam_info):
    fetcher = FakeFetcher(make_steam_info)
    cache = ReputationCache(fetcher, rate_per_sec=100)
    other = STEAM_ID + 1
    original = fetcher.fetch_steam_infos

    async def drop_other(steam_ids, *, friends_for=()):
        results = await original(steam_ids, friends_for=friends_for)
        results.pop(other, None)
        return results

    fetcher.fetch_steam_infos = drop_other

    found, missing = await asyncio.gather(cache.fetch(STEAM_ID), cache.fetch(other), return_exceptions=True)

    assert found.name == "player1"
    assert isinstance(missing, ReputationServiceError)
    assert cache.cached(other) is None


def test_batch_size_is_bounded(make_steam_info):
    with pytest.raises(ValueError):
        ReputationCache(FakeFetcher(make_steam_info), batch_size=101)
