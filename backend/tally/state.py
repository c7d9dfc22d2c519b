"""
Immutable in-memory state and the pure transitions applied to it.

GameState is the single snapshot of games and players. Every function
here returns a new GameState and never mutates its input; the mutation
API in tally.service is the only caller that swaps the live snapshot.
"""

from collections.abc import Iterable

from pydantic import BaseModel

from tally.exceptions import GameNotFoundError, InvalidInputError, RoundNotFoundError
from tally.models import Game, Player, Round

_PLAYER_FIELDS = set(Player.model_fields) - {"id"}


class GameState(BaseModel, frozen=True):
    games: tuple[Game, ...] = ()
    players: tuple[Player, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.games and not self.players

    def get_game(self, game_id: str) -> Game | None:
        for game in self.games:
            if game.id == game_id:
                return game
        return None

    def get_player(self, player_id: str) -> Player | None:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def find_game_by_code(self, code: str) -> Game | None:
        """Exact-match lookup on the join code."""
        for game in self.games:
            if game.unique_code == code:
                return game
        return None

    @property
    def codes_in_use(self) -> set[str]:
        return {game.unique_code for game in self.games if game.unique_code}


def _require_game(state: GameState, game_id: str) -> Game:
    game = state.get_game(game_id)
    if game is None:
        raise GameNotFoundError(f"No game with id '{game_id}'")
    return game


def replace_game(state: GameState, game: Game) -> GameState:
    """Return new state with the game of the same id swapped in place."""
    _require_game(state, game.id)
    games = tuple(game if existing.id == game.id else existing for existing in state.games)
    return state.model_copy(update={"games": games})


def add_player(state: GameState, player: Player) -> GameState:
    return add_players(state, [player])


def add_players(state: GameState, players: Iterable[Player]) -> GameState:
    return state.model_copy(update={"players": (*state.players, *players)})


def add_games(state: GameState, games: Iterable[Game]) -> GameState:
    return state.model_copy(update={"games": (*state.games, *games)})


def remove_games(state: GameState, game_ids: Iterable[str]) -> GameState:
    doomed = set(game_ids)
    return state.model_copy(update={"games": tuple(g for g in state.games if g.id not in doomed)})


def append_round(state: GameState, game_id: str, game_round: Round) -> GameState:
    game = _require_game(state, game_id)
    return replace_game(state, game.model_copy(update={"rounds": (*game.rounds, game_round)}))


def replace_round(state: GameState, game_id: str, game_round: Round) -> GameState:
    game = _require_game(state, game_id)
    if game.get_round(game_round.id) is None:
        raise RoundNotFoundError(f"Game '{game_id}' has no round '{game_round.id}'")
    rounds = tuple(game_round if r.id == game_round.id else r for r in game.rounds)
    return replace_game(state, game.model_copy(update={"rounds": rounds}))


def remove_round(state: GameState, game_id: str, round_id: str) -> GameState:
    game = _require_game(state, game_id)
    if game.get_round(round_id) is None:
        raise RoundNotFoundError(f"Game '{game_id}' has no round '{round_id}'")
    rounds = tuple(r for r in game.rounds if r.id != round_id)
    return replace_game(state, game.model_copy(update={"rounds": rounds}))


def update_player(state: GameState, player_id: str, **updates: object) -> GameState:
    """
    Return new state with updated fields on one player.

    Raises:
        InvalidInputError: If the player is unknown or a field name is not updatable

    """
    invalid_fields = set(updates) - _PLAYER_FIELDS
    if invalid_fields:
        raise InvalidInputError(f"Invalid player fields: {sorted(invalid_fields)}")
    if state.get_player(player_id) is None:
        raise InvalidInputError(f"No player with id '{player_id}'")
    players = tuple(p.model_copy(update=updates) if p.id == player_id else p for p in state.players)
    return state.model_copy(update={"players": players})
