from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pymac.models import Verdict, parse_steam_id64


class UserRequest(BaseModel):
    users: List[int]

    @field_validator("users", mode="before")
    @classmethod
    def _parse_ids(cls, value: Any) -> List[int]:
        if not isinstance(value, list):
            raise ValueError("users must be a list of SteamIDs")
        return [parse_steam_id64(item) for item in value]


class UserUpdate(BaseModel):
    local_verdict: Verdict | None = Field(default=None, alias="localVerdict")
    tags: List[str] | None = None
    custom_data: Dict[str, Any] | None = Field(default=None, alias="customData")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("local_verdict", mode="before")
    @classmethod
    def _parse_verdict(cls, value: Any) -> Verdict | None:
        if value is None:
            return None
        return Verdict.parse(value)


class UserUpdateResponse(BaseModel):
    players: List[Dict[str, Any]]
    unsaved: List[int] = Field(default_factory=list)
