"""Choose the authoritative data source on identity changes and mirror writes.

Sign-in with existing remote data: remote wins and replaces the session.
Sign-in with an empty remote: local data is kept and pushed up, which is
how guest data follows a user into their account. Sign-out (or no
identity at start): local data only, no remote calls.

Writes always go to the local store first and synchronously; the remote
mirror is queued afterwards and may fail without undoing the local write.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from tally.exceptions import RemoteSyncError
from tally.notifications import Notification, NotificationLevel
from tally.sync import SaveAll

if TYPE_CHECKING:
    from tally.local_store import LocalStore
    from tally.notifications import Notifier
    from tally.state import GameState
    from tally.sync import RemoteSync, SyncOperation

logger = structlog.get_logger()


class Reconciler:
    def __init__(self, local_store: LocalStore, remote_sync: RemoteSync | None, notify: Notifier) -> None:
        self._local_store = local_store
        self._remote_sync = remote_sync
        self._notify = notify

    async def hydrate(self, user_id: str | None) -> GameState:
        """Return the state a session for ``user_id`` should start from."""
        if user_id is None or self._remote_sync is None:
            state = self._local_store.load()
            logger.info("hydrated from local store", games=len(state.games), players=len(state.players))
            return state

        # Let earlier writes for this user land before reading them back.
        await self._remote_sync.flush(user_id)
        try:
            remote_state = await self._remote_sync.repository.load_all(user_id)
        except RemoteSyncError as exc:
            logger.warning("remote load failed, using local store", error=str(exc))
            self._notify(
                Notification(
                    title=exc.title,
                    description="Could not load your account data. Showing data saved on this device.",
                    level=NotificationLevel.ERROR,
                ),
            )
            return self._local_store.load()

        if not remote_state.is_empty:
            logger.info(
                "hydrated from remote",
                games=len(remote_state.games),
                players=len(remote_state.players),
            )
            self._save_local(remote_state)
            return remote_state

        local_state = self._local_store.load()
        logger.info("remote is empty, keeping local data", games=len(local_state.games))
        if not local_state.is_empty:
            self._remote_sync.save_all(user_id, local_state)
        return local_state

    def persist(self, state: GameState, user_id: str | None, remote_operation: SyncOperation | None = None) -> None:
        """Write locally, then queue the remote mirror when signed in.

        Raises:
            OSError: The local write failed. Nothing was queued remotely.

        """
        self._local_store.save(state.games, state.players)
        if user_id is not None and self._remote_sync is not None:
            self._remote_sync.enqueue(user_id, remote_operation or SaveAll(state))

    def save_local(self, state: GameState) -> None:
        self._local_store.save(state.games, state.players)

    def _save_local(self, state: GameState) -> None:
        try:
            self._local_store.save(state.games, state.players)
        except OSError as exc:
            logger.error("could not write local store", error=str(exc))
