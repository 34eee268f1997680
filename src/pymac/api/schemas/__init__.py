"""Pydantic models for API I/O."""

from .prefs import InternalPreferences, InternalPreferencesState, Preferences, PreferencesResponse
from .user import UserRequest, UserUpdate, UserUpdateResponse

__all__ = [
    "InternalPreferences",
    "InternalPreferencesState",
    "Preferences",
    "PreferencesResponse",
    "UserRequest",
    "UserUpdate",
    "UserUpdateResponse",
]
