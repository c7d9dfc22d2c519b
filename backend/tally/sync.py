"""Background mirroring of local mutations to the remote repository.

Each user id gets its own FIFO queue drained by a single worker task, so
remote writes for one identity are applied in the order the mutations
happened and never overlap. Callers enqueue and return immediately;
outcomes surface only through the notifier and the structured log. Events
logged by a worker carry ``user_id`` and ``operation`` as bound context.

Every remote write is an idempotent upsert or delete-by-id, so failed
operations are retried with exponential backoff before being reported.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from tally.exceptions import RemoteSyncError
from tally.notifications import Notification, NotificationLevel

if TYPE_CHECKING:
    from tally.dal.remote_repository import RemoteRepository, SaveResult
    from tally.notifications import Notifier
    from tally.state import GameState

logger = structlog.get_logger()


@dataclass(frozen=True)
class SaveAll:
    state: GameState


@dataclass(frozen=True)
class DeleteGames:
    game_ids: tuple[str, ...]


@dataclass(frozen=True)
class DeleteRounds:
    round_ids: tuple[str, ...]


SyncOperation = SaveAll | DeleteGames | DeleteRounds

SaveCallback = Callable[[str, "SaveResult"], None]


class RemoteSync:
    """Per-identity serialized write queue in front of a RemoteRepository."""

    def __init__(
        self,
        repository: RemoteRepository,
        notify: Notifier,
        *,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        on_saved: SaveCallback | None = None,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self._repository = repository
        self._notify = notify
        self._retry_attempts = retry_attempts
        self._retry_backoff_seconds = retry_backoff_seconds
        self._on_saved = on_saved
        self._queues: dict[str, asyncio.Queue[SyncOperation]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}

    @property
    def repository(self) -> RemoteRepository:
        return self._repository

    def set_save_callback(self, on_saved: SaveCallback | None) -> None:
        self._on_saved = on_saved

    def enqueue(self, user_id: str, operation: SyncOperation) -> None:
        """Queue an operation for the user. Requires a running event loop."""
        queue = self._queues.get(user_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[user_id] = queue
        worker = self._workers.get(user_id)
        if worker is None or worker.done():
            self._workers[user_id] = asyncio.create_task(self._drain(user_id, queue))
        queue.put_nowait(operation)

    def save_all(self, user_id: str, state: GameState) -> None:
        self.enqueue(user_id, SaveAll(state))

    async def flush(self, user_id: str | None = None) -> None:
        """Wait until queued operations (for one user, or all users) have finished."""
        user_ids = [user_id] if user_id is not None else list(self._queues)
        for uid in user_ids:
            queue = self._queues.get(uid)
            if queue is not None:
                await queue.join()

    async def close(self) -> None:
        """Finish outstanding work, then stop all workers."""
        await self.flush()
        for task in self._workers.values():
            task.cancel()
        for task in self._workers.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers.clear()
        self._queues.clear()

    async def _drain(self, user_id: str, queue: asyncio.Queue[SyncOperation]) -> None:
        while True:
            operation = await queue.get()
            try:
                with structlog.contextvars.bound_contextvars(user_id=user_id, operation=type(operation).__name__):
                    await self._run_with_retry(user_id, operation)
            finally:
                queue.task_done()

    async def _run_with_retry(self, user_id: str, operation: SyncOperation) -> None:
        for attempt in range(1, self._retry_attempts + 1):
            try:
                result = await self._execute(user_id, operation)
            except RemoteSyncError as exc:
                if attempt == self._retry_attempts:
                    logger.warning(
                        "remote sync failed",
                        attempts=attempt,
                        error=str(exc),
                        failures=exc.failures,
                    )
                    self._notify(
                        Notification(
                            title=exc.title,
                            description="Changes are saved on this device but could not be synced to your account.",
                            level=NotificationLevel.ERROR,
                        ),
                    )
                    return
                delay = self._retry_backoff_seconds * 2 ** (attempt - 1)
                logger.info("retrying remote sync", attempt=attempt, delay=delay)
                await asyncio.sleep(delay)
            except Exception:
                # A bug in a repository must not kill the worker for this user.
                logger.exception("unexpected remote sync error")
                self._notify(
                    Notification(
                        title="Sync failed",
                        description="An unexpected error stopped syncing this change.",
                        level=NotificationLevel.ERROR,
                    ),
                )
                return
            else:
                logger.debug("remote sync complete", attempts=attempt)
                if result is not None and self._on_saved is not None and not result.is_empty:
                    self._on_saved(user_id, result)
                return

    async def _execute(self, user_id: str, operation: SyncOperation) -> SaveResult | None:
        match operation:
            case SaveAll(state=state):
                return await self._repository.save_all(state.games, state.players, user_id)
            case DeleteGames(game_ids=game_ids):
                await self._repository.delete_games(game_ids, user_id)
            case DeleteRounds(round_ids=round_ids):
                await self._repository.delete_rounds(round_ids, user_id)
        return None
