"""Derived queries over games: totals, phase progress, winners and rankings.

These functions assume well-formed models. Nothing here validates input;
malformed data means an earlier validation gap.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from tally.models import Game, GameType, Player, Round

UNKNOWN_PLAYER_NAME = "Unknown Player"
MAX_PHASE = 10


@dataclass(frozen=True)
class LastPlayedPhase:
    phase: int
    completed: bool


@dataclass(frozen=True)
class PlayerRanking:
    player_id: str
    name: str
    total: int
    rank: int  # 1 is best


def calculate_total_score(game: Game, player_id: str) -> int:
    """Sum the player's scores across all rounds; rounds without a score add 0."""
    total = 0
    for game_round in game.rounds:
        player_score = game_round.score_for(player_id)
        if player_score is not None:
            total += player_score.score
    return total


def calculate_grand_total(games: Iterable[Game], player_id: str) -> int:
    """Sum of per-game totals over games that list the player as a participant."""
    return sum(calculate_total_score(game, player_id) for game in games if game.has_player(player_id))


def get_current_phase(game: Game, player_id: str) -> int:
    """Phase the player is attempting next: one past the highest completed, capped at 10."""
    completed_phases = [
        player_score.phase
        for game_round in game.rounds
        if (player_score := game_round.score_for(player_id)) is not None and player_score.completed
    ]
    if not completed_phases:
        return 1
    return min(MAX_PHASE, max(completed_phases) + 1)


def get_last_played_phase(game: Game, player_id: str) -> LastPlayedPhase | None:
    """Phase and completion from the most recent round in which the player scored."""
    for game_round in reversed(game.rounds):
        player_score = game_round.score_for(player_id)
        if player_score is not None:
            return LastPlayedPhase(phase=player_score.phase, completed=player_score.completed)
    return None


def get_round_winner(game: Game, game_round: Round) -> str | None:
    """Winner of a round.

    Poker rounds store the winner explicitly. Phase 10 winners are derived:
    among players with a score in this round, the one with the lowest
    cumulative score up to and including this round. Earlier seating order
    breaks ties.
    """
    if game.game_type == GameType.POKER:
        return game_round.winner_id
    if not game_round.player_scores:
        return None

    totals: dict[str, int] = {}
    for played in game.rounds:
        for player_score in played.player_scores:
            totals[player_score.player_id] = totals.get(player_score.player_id, 0) + player_score.score
        if played.id == game_round.id:
            break

    scored = [player_score.player_id for player_score in game_round.player_scores]
    participants = [pid for pid in game.player_ids if pid in scored]
    participants += [pid for pid in scored if pid not in participants]
    return min(participants, key=lambda pid: totals.get(pid, 0))


def get_player_rankings(games: Sequence[Game], players: Sequence[Player]) -> list[PlayerRanking]:
    """Rank players by effective total, ascending (lower is better).

    The effective total is the manual override when one is set, otherwise
    the grand total. Ties keep the order of ``players``.
    """
    totals = [
        (
            player,
            player.manual_total if player.manual_total is not None else calculate_grand_total(games, player.id),
        )
        for player in players
    ]
    ranked = sorted(totals, key=lambda item: item[1])
    return [
        PlayerRanking(player_id=player.id, name=player.name, total=total, rank=index)
        for index, (player, total) in enumerate(ranked, start=1)
    ]


def get_player_name(players: Iterable[Player], player_id: str) -> str:
    for player in players:
        if player.id == player_id:
            return player.name
    return UNKNOWN_PLAYER_NAME


def sort_games_by_date(games: Iterable[Game]) -> list[Game]:
    """Most recent first."""
    return sorted(games, key=lambda game: game.date, reverse=True)
