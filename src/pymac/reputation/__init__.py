"""Reputation lookups against the Steam Web API."""

from .cache import ReputationCache, SteamInfoFetcher
from .client import SteamWebClient, build_steam_info
from .errors import (
    FetchTimeoutError,
    InvalidCredentialError,
    MissingCredentialError,
    ProfileUnavailableError,
    RateLimitedError,
    ReputationFetchError,
    ReputationServiceError,
)
from .ratelimit import TokenBucket

__all__ = [
    "FetchTimeoutError",
    "InvalidCredentialError",
    "MissingCredentialError",
    "ProfileUnavailableError",
    "RateLimitedError",
    "ReputationCache",
    "ReputationFetchError",
    "ReputationServiceError",
    "SteamInfoFetcher",
    "SteamWebClient",
    "TokenBucket",
    "build_steam_info",
]
