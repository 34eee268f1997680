"""Export helpers producing the documented JSON shapes."""

from .game_state import ExportError, export_game_state, export_player, game_state_json
from .schema import GAME_STATE_SCHEMA, PLAYER_RECORD_SCHEMA

__all__ = [
    "ExportError",
    "GAME_STATE_SCHEMA",
    "PLAYER_RECORD_SCHEMA",
    "export_game_state",
    "export_player",
    "game_state_json",
]
