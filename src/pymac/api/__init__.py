"""Local JSON API over the roster service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException

from pymac.api.schemas import (
    InternalPreferencesState,
    Preferences,
    PreferencesResponse,
    UserRequest,
    UserUpdate,
    UserUpdateResponse,
)
from pymac.config import Settings
from pymac.export import ExportError, export_game_state, export_player
from pymac.models import parse_steam_id64
from pymac.persistence import PersistenceError, VerdictEntry
from pymac.service import RosterService


logger = logging.getLogger(__name__)


def verdict_entry_to_dict(entry: VerdictEntry) -> dict:
    return {
        "verdict": entry.local_verdict.value,
        "convicted": entry.convicted,
        "tags": sorted(entry.tags),
        "customData": entry.custom_data,
        "previousNames": list(entry.previous_names),
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
        "updatedAt": entry.updated_at.isoformat() if entry.updated_at else None,
    }


def create_app(
    service: RosterService,
    *,
    settings: Optional[Settings] = None,
    settings_path: Optional[Path] = None,
) -> FastAPI:
    app = FastAPI(title="pymac")
    app.state.service = service
    app.state.external_prefs = None

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/mac/game/v1")
    async def get_game() -> Dict[str, Any]:
        try:
            return export_game_state(service.snapshot())
        except ExportError as exc:
            logger.error("Refusing to export inconsistent game state: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.post("/mac/user/v1")
    async def post_user(request: UserRequest) -> list[Dict[str, Any]]:
        return [export_player(record) for record in service.records(request.users)]

    @app.put("/mac/user/v1", response_model=UserUpdateResponse)
    async def put_user(users: Dict[str, UserUpdate] = Body(...)) -> UserUpdateResponse:
        try:
            updates = {parse_steam_id64(raw_id): update for raw_id, update in users.items()}
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        players = []
        unsaved = []
        for steam_id, update in updates.items():
            result = service.apply_verdict(
                steam_id,
                verdict=update.local_verdict,
                tags=update.tags,
                custom_data=update.custom_data,
            )
            players.append(export_player(result.record))
            if not result.persisted:
                unsaved.append(steam_id)
        return UserUpdateResponse(players=players, unsaved=unsaved)

    @app.get("/mac/playerlist/v1")
    async def get_playerlist() -> Dict[str, Any]:
        try:
            entries = service.roster.store.load()
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"records": {str(steam_id): verdict_entry_to_dict(entry) for steam_id, entry in entries.items()}}

    def _save_settings() -> None:
        if settings is None or settings_path is None:
            return
        try:
            settings.save(settings_path)
        except OSError as exc:
            logger.warning("Could not save settings to %s: %s", settings_path, exc)

    @app.get("/mac/pref/v1", response_model=PreferencesResponse)
    async def get_prefs() -> PreferencesResponse:
        return PreferencesResponse(
            internal=InternalPreferencesState(
                steamApiKeySet=service.cache.has_credential,
                friendsApiUsage=service.friends_api_usage,
            ),
            external=app.state.external_prefs,
        )

    @app.put("/mac/pref/v1", response_model=PreferencesResponse)
    async def put_prefs(prefs: Preferences) -> PreferencesResponse:
        internal = prefs.internal
        changed = False
        if internal is not None and "steam_api_key" in internal.model_fields_set:
            api_key = (internal.steam_api_key or "").strip() or None
            scheduled = service.set_api_key(api_key)
            logger.info("Steam API key replaced; %s profile lookup(s) scheduled", scheduled)
            if settings is not None:
                settings.steam_api_key = api_key
                changed = True
        if internal is not None and internal.friends_api_usage is not None:
            scheduled = service.set_friends_api_usage(internal.friends_api_usage)
            logger.info("Friend lookup policy changed; %s friend list lookup(s) scheduled", scheduled)
            if settings is not None:
                settings.friends_api_usage = internal.friends_api_usage.value
                changed = True
        if changed:
            _save_settings()
        if "external" in prefs.model_fields_set:
            app.state.external_prefs = prefs.external
        return await get_prefs()

    return app


__all__ = ["create_app", "verdict_entry_to_dict"]
