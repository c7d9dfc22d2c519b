"""Data access layer: the remote repository interface and its result types."""

from tally.dal.remote_repository import RemoteRepository, SaveResult

__all__ = [
    "RemoteRepository",
    "SaveResult",
]
