"""SQLite implementation of the remote mirror: connection and repository."""

from tally.db.connection import Database
from tally.db.remote_repository import SqliteRemoteRepository

__all__ = [
    "Database",
    "SqliteRemoteRepository",
]
