"""Roster coordination: one record per identity, merged from every source."""

from .manager import ConvictionPolicy, PresenceHistory, RosterManager, VerdictResult

__all__ = [
    "ConvictionPolicy",
    "PresenceHistory",
    "RosterManager",
    "VerdictResult",
]
