"""Shared fixtures for tally tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from shared.storage import FileKeyValueStorage
from tally.db import Database, SqliteRemoteRepository
from tally.local_store import LocalStore
from tally.notifications import NotificationLog
from tally.service import TallyService
from tally.sync import RemoteSync

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Generator
    from pathlib import Path


@pytest.fixture
def notifications() -> NotificationLog:
    return NotificationLog()


@pytest.fixture
def storage(tmp_path: Path) -> FileKeyValueStorage:
    return FileKeyValueStorage(tmp_path / "local")


@pytest.fixture
def local_store(storage: FileKeyValueStorage) -> LocalStore:
    return LocalStore(storage)


@pytest.fixture
def database(tmp_path: Path) -> Generator[Database]:
    db = Database(tmp_path / "remote.db")
    db.connect()
    yield db
    db.close()


@pytest.fixture
def repository(database: Database) -> SqliteRemoteRepository:
    return SqliteRemoteRepository(database)


@pytest.fixture
async def remote_sync(repository: SqliteRemoteRepository, notifications: NotificationLog) -> AsyncGenerator[RemoteSync]:
    sync = RemoteSync(repository, notifications, retry_attempts=2, retry_backoff_seconds=0)
    yield sync
    await sync.close()


@pytest.fixture
async def service(
    local_store: LocalStore,
    remote_sync: RemoteSync,
    notifications: NotificationLog,
) -> AsyncGenerator[TallyService]:
    """Anonymous, started service backed by a temp directory and a temp SQLite file."""
    svc = TallyService(local_store, remote_sync, notify=notifications)
    await svc.start()
    yield svc
    await svc.close()
