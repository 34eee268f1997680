"""Canonical player and game-state models shared across ingest, roster and export."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator
from pydantic.config import ConfigDict


_WIRE_CONFIG = ConfigDict(frozen=True, populate_by_name=True)


class Verdict(str, Enum):
    """What a player is marked as in the local judgment store."""

    PLAYER = "Player"
    BOT = "Bot"
    SUSPICIOUS = "Suspicious"
    CHEATER = "Cheater"
    TRUSTED = "Trusted"

    @classmethod
    def parse(cls, value: "Verdict | str | None") -> "Verdict":
        if value is None or value == "":
            return cls.PLAYER
        if isinstance(value, Verdict):
            return value
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(f"Unknown verdict {value!r}")


class FriendsApiUsage(str, Enum):
    """Which players get a GetFriendList lookup. The user's own account always does."""

    NONE = "None"
    CHEATERS_ONLY = "CheatersOnly"
    ALL = "All"

    @classmethod
    def parse(cls, value: "FriendsApiUsage | str") -> "FriendsApiUsage":
        if isinstance(value, FriendsApiUsage):
            return value
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(f"Unknown friends API usage {value!r}")

    def includes(self, verdict: Verdict) -> bool:
        if self is FriendsApiUsage.ALL:
            return True
        if self is FriendsApiUsage.CHEATERS_ONLY:
            return verdict in (Verdict.CHEATER, Verdict.BOT)
        return False


class ProfileVisibility(str, Enum):
    PRIVATE = "Private"
    FRIENDS_ONLY = "FriendsOnly"
    PUBLIC = "Public"

    @classmethod
    def from_api(cls, value: Any) -> "ProfileVisibility":
        return {1: cls.PRIVATE, 2: cls.FRIENDS_ONLY, 3: cls.PUBLIC}.get(value, cls.PRIVATE)


class Friend(BaseModel):
    steam_id64: int = Field(..., alias="steamID64", ge=0)
    friend_since: int = Field(..., alias="friendSince")

    model_config = _WIRE_CONFIG


class SteamInfo(BaseModel):
    """Profile, ban and friend data fetched from the Steam Web API."""

    name: str
    profile_url: str = Field(..., alias="profileUrl")
    pfp: str
    pfp_hash: str = Field(..., alias="pfpHash")
    profile_visibility: ProfileVisibility = Field(..., alias="profileVisibility")
    time_created: Optional[int] = Field(default=None, alias="timeCreated")
    country_code: Optional[str] = Field(default=None, alias="countryCode")
    vac_bans: int = Field(..., alias="vacBans", ge=0)
    game_bans: int = Field(..., alias="gameBans", ge=0)
    days_since_last_ban: Optional[int] = Field(default=None, alias="daysSinceLastBan")
    friends: List[Friend] = Field(default_factory=list)

    model_config = _WIRE_CONFIG


class GameInfo(BaseModel):
    """Session-scoped scoreboard facts for a connected player."""

    team: int = 0
    ping: int = 0
    kills: int = 0
    deaths: int = 0
    time: int = 0
    state: str = "Active"
    loss: int = 0
    userid: str = Field(..., min_length=1)

    model_config = _WIRE_CONFIG


class PlayerRecord(BaseModel):
    """Unified player view merged from telemetry, reputation and local judgment."""

    is_self: bool = Field(default=False, alias="isSelf")
    name: str = Field(..., min_length=1)
    steam_id64: int = Field(..., alias="steamID64", ge=0, lt=2**64)
    steam_info: Optional[SteamInfo] = Field(default=None, alias="steamInfo")
    game_info: Optional[GameInfo] = Field(default=None, alias="gameInfo")
    custom_data: Dict[str, Any] = Field(default_factory=dict, alias="customData")
    convicted: bool = False
    local_verdict: Verdict = Field(default=Verdict.PLAYER, alias="localVerdict")
    tags: FrozenSet[str] = Field(default_factory=frozenset)

    model_config = _WIRE_CONFIG

    @field_validator("tags", mode="before")
    @classmethod
    def _collapse_tags(cls, value: Any) -> FrozenSet[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [value]
        return frozenset(str(tag).strip() for tag in value if str(tag).strip())

    @field_serializer("tags")
    def _serialize_tags(self, tags: FrozenSet[str]) -> List[str]:
        return sorted(tags)

    @property
    def in_session(self) -> bool:
        return self.game_info is not None


class Gamemode(BaseModel):
    matchmaking: bool = False
    type: str = "Unknown"
    vanilla: bool = False

    model_config = _WIRE_CONFIG


class GameState(BaseModel):
    """Point-in-time view of the current match and everyone observed in it."""

    players: List[PlayerRecord] = Field(default_factory=list)
    map: str = ""
    ip: str = ""
    hostname: str = ""
    max_players: int = Field(default=0, alias="maxPlayers", ge=0)
    num_players: int = Field(default=0, alias="numPlayers", ge=0)
    gamemode: Gamemode = Field(default_factory=Gamemode)

    model_config = _WIRE_CONFIG
