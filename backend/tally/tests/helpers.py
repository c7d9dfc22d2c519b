"""Builders for domain objects with sensible defaults."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from tally.models import Game, GameType, Player, PlayerScore, Round

if TYPE_CHECKING:
    from collections.abc import Sequence

NEW_YEAR = datetime(2024, 1, 1, tzinfo=UTC)


def make_player(name: str = "Alice", player_id: str | None = None, **fields: object) -> Player:
    return Player(id=player_id or f"p-{name.lower()}", name=name, **fields)


def make_score(
    player_id: str,
    score: int = 0,
    phase: int = 1,
    *,
    completed: bool = False,
    score_id: str | None = None,
    is_winner: bool = False,
) -> PlayerScore:
    return PlayerScore(
        id=score_id,
        player_id=player_id,
        score=score,
        phase=phase,
        completed=completed,
        is_winner=is_winner,
    )


def make_round(*scores: PlayerScore, round_id: str | None = None, **fields: object) -> Round:
    if round_id is None:
        return Round(player_scores=scores, **fields)
    return Round(id=round_id, player_scores=scores, **fields)


def make_game(
    player_ids: Sequence[str],
    rounds: Sequence[Round] = (),
    *,
    game_id: str = "g1",
    date: datetime = NEW_YEAR,
    game_type: GameType = GameType.PHASE10,
    unique_code: str | None = None,
) -> Game:
    return Game(
        id=game_id,
        unique_code=unique_code,
        date=date,
        game_type=game_type,
        player_ids=tuple(player_ids),
        rounds=tuple(rounds),
    )


def scored_game(game_id: str, players: Sequence[Player], rounds: int, *, code: str | None = None) -> Game:
    """Game where every player scores ``10 * round_number`` in every round."""
    return make_game(
        [p.id for p in players],
        [
            make_round(
                *(make_score(p.id, 10 * number, score_id=f"{game_id}-r{number}-{p.id}") for p in players),
                round_id=f"{game_id}-r{number}",
            )
            for number in range(1, rounds + 1)
        ],
        game_id=game_id,
        unique_code=code,
    )
