"""Shared data models."""

from .player import (
    Friend,
    FriendsApiUsage,
    GameInfo,
    GameState,
    Gamemode,
    PlayerRecord,
    ProfileVisibility,
    SteamInfo,
    Verdict,
)
from .steamid import account_id_to_steam_id64, parse_steam_id64, steam3_to_steam_id64

__all__ = [
    "Friend",
    "FriendsApiUsage",
    "GameInfo",
    "GameState",
    "Gamemode",
    "PlayerRecord",
    "ProfileVisibility",
    "SteamInfo",
    "Verdict",
    "account_id_to_steam_id64",
    "parse_steam_id64",
    "steam3_to_steam_id64",
]
