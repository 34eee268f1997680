"""Typed failures of a reputation lookup."""

from __future__ import annotations


class ReputationFetchError(RuntimeError):
    """Base class: the identity's ``steamInfo`` stays absent."""

    retryable = True

    def __init__(self, steam_id64: int | None, message: str):
        super().__init__(message)
        self.steam_id64 = steam_id64

    def for_identity(self, steam_id64: int) -> "ReputationFetchError":
        """Same failure attributed to one identity of a batched request."""

        if self.steam_id64 == steam_id64:
            return self
        clone = self.__class__.__new__(self.__class__)
        ReputationFetchError.__init__(clone, steam_id64, str(self))
        clone.__cause__ = self
        return clone


class MissingCredentialError(ReputationFetchError):
    retryable = False

    def __init__(self, steam_id64: int | None = None):
        super().__init__(steam_id64, "No Steam Web API key configured")


class InvalidCredentialError(ReputationFetchError):
    retryable = False


class RateLimitedError(ReputationFetchError):
    pass


class ProfileUnavailableError(ReputationFetchError):
    pass


class FetchTimeoutError(ReputationFetchError):
    pass


class ReputationServiceError(ReputationFetchError):
    pass
