"""Abstract interface for the per-user remote mirror of games and players."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tally.models import Game, Player
    from tally.state import GameState


class SaveResult(BaseModel, frozen=True):
    """Identifiers the remote store assigned during save_all.

    The caller folds these back into in-memory state so that the next save
    writes the same values instead of inventing new ones.
    """

    assigned_codes: dict[str, str] = Field(default_factory=dict)  # game_id -> join code
    assigned_score_ids: dict[str, dict[str, str]] = Field(default_factory=dict)  # round_id -> player_id -> score id

    @property
    def is_empty(self) -> bool:
        return not self.assigned_codes and not self.assigned_score_ids


class RemoteRepository(ABC):
    """Relational mirror of the model, scoped by authenticated user id.

    Every write is an upsert keyed by primary id, so repeating a call with
    unchanged input leaves the stored rows unchanged. Implementations raise
    RemoteSyncError on any storage failure.
    """

    @abstractmethod
    async def load_all(self, user_id: str) -> GameState: ...

    @abstractmethod
    async def save_all(self, games: Sequence[Game], players: Sequence[Player], user_id: str) -> SaveResult: ...

    @abstractmethod
    async def delete_games(self, game_ids: Sequence[str], user_id: str) -> None: ...

    @abstractmethod
    async def delete_rounds(self, round_ids: Sequence[str], user_id: str) -> None: ...

    async def delete_game(self, game_id: str, user_id: str) -> None:
        await self.delete_games([game_id], user_id)

    async def delete_round(self, round_id: str, user_id: str) -> None:
        await self.delete_rounds([round_id], user_id)
