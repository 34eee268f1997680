"""Serialize roster snapshots into the documented wire shapes."""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping

from pymac.models import GameState, PlayerRecord

from .schema import GAME_STATE_SCHEMA, PLAYER_RECORD_SCHEMA


class ExportError(RuntimeError):
    """Raised when a payload would not satisfy the export schemas."""


def _check_required(payload: Any, schema: Mapping[str, Any], path: str) -> None:
    """Walk ``schema`` and ensure every required key is present in ``payload``.

    Only key presence is checked; ``anyOf`` branches are satisfied by ``null``
    or by an object that carries the object branch's required keys.
    """

    if "anyOf" in schema:
        if payload is None:
            return
        for option in schema["anyOf"]:
            if option.get("type") == "object":
                _check_required(payload, option, path)
                return
        return
    if schema.get("type") == "object":
        if not isinstance(payload, Mapping):
            raise ExportError(f"{path} must be an object")
        missing = [key for key in schema.get("required", ()) if key not in payload]
        if missing:
            raise ExportError(f"{path} is missing required keys: {', '.join(missing)}")
        for key, subschema in schema.get("properties", {}).items():
            if key in payload:
                _check_required(payload[key], subschema, f"{path}.{key}")
    elif schema.get("type") == "array" and "items" in schema:
        if not isinstance(payload, list):
            raise ExportError(f"{path} must be an array")
        for idx, item in enumerate(payload):
            _check_required(item, schema["items"], f"{path}[{idx}]")


def export_player(record: PlayerRecord) -> Dict[str, Any]:
    payload = record.model_dump(by_alias=True, mode="json")
    _check_required(payload, PLAYER_RECORD_SCHEMA, "PlayerRecord")
    return payload


def export_game_state(state: GameState) -> Dict[str, Any]:
    """Return the ``GameState`` payload, rejecting inconsistent snapshots."""

    payload = state.model_dump(by_alias=True, mode="json")
    _check_required(payload, GAME_STATE_SCHEMA, "GameState")
    in_session = sum(1 for player in payload["players"] if player["gameInfo"] is not None)
    if payload["numPlayers"] != in_session:
        raise ExportError(
            f"numPlayers is {payload['numPlayers']} but {in_session} player(s) have gameInfo"
        )
    return payload


def game_state_json(state: GameState, *, indent: int | None = None) -> str:
    return json.dumps(export_game_state(state), indent=indent)
