from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pymac.models import FriendsApiUsage


class InternalPreferences(BaseModel):
    steam_api_key: str | None = Field(default=None, alias="steamApiKey")
    friends_api_usage: FriendsApiUsage | None = Field(default=None, alias="friendsApiUsage")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("friends_api_usage", mode="before")
    @classmethod
    def _parse_usage(cls, value: Any) -> FriendsApiUsage | None:
        if value is None:
            return None
        return FriendsApiUsage.parse(value)


class Preferences(BaseModel):
    internal: InternalPreferences | None = None
    external: Any = None


class InternalPreferencesState(BaseModel):
    """Internal preferences as reported back; the key itself is never echoed."""

    steam_api_key_set: bool = Field(..., alias="steamApiKeySet")
    friends_api_usage: FriendsApiUsage = Field(..., alias="friendsApiUsage")

    model_config = ConfigDict(populate_by_name=True)


class PreferencesResponse(BaseModel):
    internal: InternalPreferencesState
    external: Any = None
