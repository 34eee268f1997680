"""Steam Web API client returning :class:`SteamInfo` for an identity."""

from __future__ import annotations

import logging
from typing import Any, Collection, Dict, List, Optional, Sequence, Union

import httpx

from pymac.models import Friend, ProfileVisibility, SteamInfo

from .errors import (
    FetchTimeoutError,
    InvalidCredentialError,
    MissingCredentialError,
    ProfileUnavailableError,
    RateLimitedError,
    ReputationFetchError,
    ReputationServiceError,
)


logger = logging.getLogger(__name__)

STEAM_API_BASE_URL = "https://api.steampowered.com"
SUMMARIES_PATH = "/ISteamUser/GetPlayerSummaries/v2/"
BANS_PATH = "/ISteamUser/GetPlayerBans/v1/"
FRIENDS_PATH = "/ISteamUser/GetFriendList/v1/"

# GetPlayerSummaries and GetPlayerBans accept at most this many ids per call.
STEAM_BATCH_LIMIT = 100

LookupOutcome = Union[SteamInfo, ReputationFetchError]


class SteamWebClient:
    """Thin async wrapper over the three ISteamUser calls a profile needs.

    Summaries and bans are requested for a whole batch of identities at once;
    friend lists are one call per identity and only made when asked for.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = STEAM_API_BASE_URL,
        timeout: float = 10.0,
    ):
        self.api_key = api_key or None
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_steam_info(self, steam_id64: int, *, include_friends: bool = True) -> SteamInfo:
        results = await self.fetch_steam_infos([steam_id64], friends_for=[steam_id64] if include_friends else ())
        outcome = results[steam_id64]
        if isinstance(outcome, ReputationFetchError):
            raise outcome
        return outcome

    async def fetch_steam_infos(
        self,
        steam_ids: Sequence[int],
        *,
        friends_for: Collection[int] = (),
    ) -> Dict[int, LookupOutcome]:
        """Look up several identities with one summaries call and one bans call.

        A failure of either shared call raises. Problems that concern a single
        identity, such as a missing profile or an unusable friend list, are
        returned in place of its :class:`SteamInfo`. Friend lists are only
        requested for identities in ``friends_for``.
        """

        steam_ids = list(dict.fromkeys(steam_ids))
        if not steam_ids:
            return {}
        if len(steam_ids) > STEAM_BATCH_LIMIT:
            raise ValueError(f"At most {STEAM_BATCH_LIMIT} ids per lookup, got {len(steam_ids)}")
        if not self.api_key:
            raise MissingCredentialError(_batch_owner(steam_ids))
        summaries = await self._get_summaries(steam_ids)
        bans = await self._get_bans(steam_ids)
        results: Dict[int, LookupOutcome] = {}
        for steam_id in steam_ids:
            try:
                results[steam_id] = await self._build(
                    steam_id,
                    summaries.get(steam_id),
                    bans.get(steam_id),
                    include_friends=steam_id in friends_for,
                )
            except ReputationFetchError as exc:
                results[steam_id] = exc
        return results

    async def _build(
        self,
        steam_id64: int,
        summary: Optional[Dict[str, Any]],
        ban: Optional[Dict[str, Any]],
        *,
        include_friends: bool,
    ) -> SteamInfo:
        if summary is None:
            raise ProfileUnavailableError(steam_id64, f"Missing summary for {steam_id64}")
        if ban is None:
            raise ProfileUnavailableError(steam_id64, f"Missing bans for {steam_id64}")
        friends = await self._get_friends(steam_id64) if include_friends else []
        try:
            return build_steam_info(summary, ban, friends)
        except (TypeError, ValueError) as exc:
            raise ReputationServiceError(steam_id64, f"Unusable profile data for {steam_id64}: {exc}") from exc

    async def _get_summaries(self, steam_ids: Sequence[int]) -> Dict[int, Dict[str, Any]]:
        owner = _batch_owner(steam_ids)
        payload = await self._get(SUMMARIES_PATH, {"steamids": ",".join(map(str, steam_ids))}, owner)
        response = payload.get("response")
        if not isinstance(response, dict):
            raise ReputationServiceError(owner, "Steam API summaries payload has no response object")
        return _index_by(response.get("players"), "steamid", owner)

    async def _get_bans(self, steam_ids: Sequence[int]) -> Dict[int, Dict[str, Any]]:
        owner = _batch_owner(steam_ids)
        payload = await self._get(BANS_PATH, {"steamids": ",".join(map(str, steam_ids))}, owner)
        return _index_by(payload.get("players"), "SteamId", owner)

    async def _get_friends(self, steam_id64: int) -> List[Friend]:
        try:
            payload = await self._get(
                FRIENDS_PATH,
                {"steamid": str(steam_id64), "relationship": "all"},
                steam_id64,
            )
        except InvalidCredentialError:
            # The friends endpoint answers 401 for private friend lists.
            logger.debug("Friend list for %s is private", steam_id64)
            return []
        friendslist = payload.get("friendslist") or {}
        items = (friendslist.get("friends") or []) if isinstance(friendslist, dict) else None
        if not isinstance(items, list):
            raise ReputationServiceError(steam_id64, f"Steam API friend list for {steam_id64} is malformed")
        friends = []
        for item in items:
            try:
                friends.append(Friend(steamID64=int(item["steamid"]), friendSince=int(item.get("friend_since", 0))))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping unparseable friend entry for %s: %r", steam_id64, item)
        return friends

    async def _get(self, path: str, params: Dict[str, str], steam_id64: Optional[int]) -> Dict[str, Any]:
        query = {"key": self.api_key or "", **params}
        try:
            resp = await self._client.get(path, params=query)
        except httpx.TimeoutException as exc:
            raise FetchTimeoutError(steam_id64, f"Steam API timed out on {path}") from exc
        except httpx.HTTPError as exc:
            raise ReputationServiceError(steam_id64, f"Steam API request failed: {exc}") from exc
        if resp.status_code in (401, 403):
            raise InvalidCredentialError(steam_id64, f"Steam API rejected the key ({resp.status_code})")
        if resp.status_code == 429:
            raise RateLimitedError(steam_id64, "Steam API rate limit reached")
        if resp.status_code >= 400:
            raise ReputationServiceError(steam_id64, f"Steam API returned {resp.status_code} for {path}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ReputationServiceError(steam_id64, f"Steam API returned invalid JSON for {path}") from exc
        if not isinstance(payload, dict):
            raise ReputationServiceError(steam_id64, f"Unexpected Steam API payload for {path}")
        return payload


def _batch_owner(steam_ids: Sequence[int]) -> Optional[int]:
    return steam_ids[0] if len(steam_ids) == 1 else None


def _index_by(players: Any, key: str, owner: Optional[int]) -> Dict[int, Dict[str, Any]]:
    if players is None:
        return {}
    if not isinstance(players, list):
        raise ReputationServiceError(owner, f"Steam API players payload is a {type(players).__name__}, not a list")
    indexed: Dict[int, Dict[str, Any]] = {}
    for player in players:
        try:
            indexed[int(player[key])] = player
        except (KeyError, TypeError, ValueError):
            logger.debug("Skipping Steam API entry without a usable %s: %r", key, player)
    return indexed


def build_steam_info(summary: Dict[str, Any], ban: Dict[str, Any], friends: List[Friend]) -> SteamInfo:
    vac_bans = int(ban.get("NumberOfVACBans") or 0)
    game_bans = int(ban.get("NumberOfGameBans") or 0)
    days_since_last_ban = None
    if vac_bans > 0 or game_bans > 0:
        days_since_last_ban = int(ban.get("DaysSinceLastBan") or 0)
    time_created = summary.get("timecreated")
    return SteamInfo(
        name=str(summary.get("personaname", "")),
        profileUrl=str(summary.get("profileurl", "")),
        pfp=str(summary.get("avatarfull", "")),
        pfpHash=str(summary.get("avatarhash", "")),
        profileVisibility=ProfileVisibility.from_api(summary.get("communityvisibilitystate")),
        timeCreated=int(time_created) if time_created is not None else None,
        countryCode=summary.get("loccountrycode"),
        vacBans=vac_bans,
        gameBans=game_bans,
        daysSinceLastBan=days_since_last_ban,
        friends=friends,
    )
