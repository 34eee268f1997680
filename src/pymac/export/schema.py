"""JSON Schemas (draft-07) for the exported player record and game state."""

from __future__ import annotations

from typing import Any, Dict


DRAFT_07 = "http://json-schema.org/draft-07/schema#"

PLAYER_RECORD_REQUIRED = (
    "isSelf",
    "name",
    "steamID64",
    "steamInfo",
    "gameInfo",
    "customData",
    "convicted",
    "localVerdict",
    "tags",
)

GAME_STATE_REQUIRED = ("players", "map", "ip", "hostname", "maxPlayers", "numPlayers", "gamemode")

VERDICTS = ["Player", "Bot", "Suspicious", "Cheater", "Trusted"]

_FRIEND_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["steamID64", "friendSince"],
    "properties": {
        "steamID64": {"type": "integer", "minimum": 0, "maximum": 18446744073709551615},
        "friendSince": {"type": "integer"},
    },
}

_STEAM_INFO_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": [
        "name",
        "profileUrl",
        "pfp",
        "pfpHash",
        "profileVisibility",
        "timeCreated",
        "countryCode",
        "vacBans",
        "gameBans",
        "daysSinceLastBan",
    ],
    "properties": {
        "name": {"type": "string"},
        "profileUrl": {"type": "string"},
        "pfp": {"type": "string"},
        "pfpHash": {"type": "string"},
        "profileVisibility": {"type": "string", "enum": ["Private", "FriendsOnly", "Public"]},
        "timeCreated": {"anyOf": [{"type": "integer"}, {"type": "null"}]},
        "countryCode": {"anyOf": [{"type": "string"}, {"type": "null"}]},
        "vacBans": {"type": "integer", "minimum": 0},
        "gameBans": {"type": "integer", "minimum": 0},
        "daysSinceLastBan": {"anyOf": [{"type": "integer"}, {"type": "null"}]},
        "friends": {"type": "array", "items": _FRIEND_SCHEMA, "default": []},
    },
}

_GAME_INFO_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["team", "ping", "kills", "deaths", "time", "state", "loss", "userid"],
    "properties": {
        "team": {"type": "integer", "minimum": 0, "maximum": 3},
        "ping": {"type": "integer"},
        "kills": {"type": "integer"},
        "deaths": {"type": "integer"},
        "time": {"type": "integer"},
        "state": {"type": "string"},
        "loss": {"type": "integer"},
        "userid": {"type": "string"},
    },
}

PLAYER_RECORD_SCHEMA: Dict[str, Any] = {
    "$schema": DRAFT_07,
    "title": "PlayerRecord",
    "type": "object",
    "required": list(PLAYER_RECORD_REQUIRED),
    "properties": {
        "isSelf": {"type": "boolean"},
        "name": {"type": "string"},
        "steamID64": {"type": "integer", "minimum": 0, "maximum": 18446744073709551615},
        "steamInfo": {"anyOf": [_STEAM_INFO_SCHEMA, {"type": "null"}]},
        "gameInfo": {"anyOf": [_GAME_INFO_SCHEMA, {"type": "null"}]},
        "customData": {"type": "object"},
        "convicted": {"type": "boolean"},
        "localVerdict": {"type": "string", "enum": VERDICTS},
        "tags": {"type": "array", "items": {"type": "string"}, "uniqueItems": True},
    },
}

_PLAYER_RECORD_ITEM = {key: value for key, value in PLAYER_RECORD_SCHEMA.items() if key != "$schema"}

GAME_STATE_SCHEMA: Dict[str, Any] = {
    "$schema": DRAFT_07,
    "title": "GameState",
    "type": "object",
    "required": list(GAME_STATE_REQUIRED),
    "properties": {
        "players": {"type": "array", "items": _PLAYER_RECORD_ITEM},
        "map": {"type": "string"},
        "ip": {"type": "string"},
        "hostname": {"type": "string"},
        "maxPlayers": {"type": "integer", "minimum": 0},
        "numPlayers": {"type": "integer", "minimum": 0},
        "gamemode": {
            "type": "object",
            "required": ["matchmaking", "type", "vanilla"],
            "properties": {
                "matchmaking": {"type": "boolean"},
                "type": {"type": "string"},
                "vanilla": {"type": "boolean"},
            },
        },
    },
}
