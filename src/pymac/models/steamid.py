"""SteamID conversions between the console's SteamID3 form and SteamID64."""

from __future__ import annotations

import re

STEAMID64_BASE = 76561197960265728

_STEAM3_PATTERN = re.compile(r"^\[U:(\d):(\d+)\]$")


def account_id_to_steam_id64(account_id: int) -> int:
    if account_id < 0 or account_id >= 2**32:
        raise ValueError(f"account id {account_id} out of range")
    return STEAMID64_BASE + account_id


def steam3_to_steam_id64(value: str) -> int:
    """Convert ``[U:1:22202]`` into ``76561197960287930``."""

    match = _STEAM3_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"{value!r} is not a SteamID3 user id")
    universe, account_id = match.groups()
    if universe != "1":
        raise ValueError(f"{value!r} is not in the public universe")
    return account_id_to_steam_id64(int(account_id))


def parse_steam_id64(value: int | str) -> int:
    """Accept a SteamID64 as int or decimal string, or a SteamID3 string."""

    if isinstance(value, int):
        steam_id = value
    else:
        text = value.strip()
        if text.startswith("["):
            return steam3_to_steam_id64(text)
        if not text.isdigit():
            raise ValueError(f"{value!r} is not a SteamID64")
        steam_id = int(text)
    if steam_id < STEAMID64_BASE or steam_id >= 2**64:
        raise ValueError(f"{value!r} is not an individual SteamID64")
    return steam_id
