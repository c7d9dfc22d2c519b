"""Mutation API: the single writer of the in-memory game state.

TallyService owns the live GameState snapshot and the current identity.
Every command validates its input, swaps in a new snapshot, writes it to
the local store and (when signed in) queues the matching remote write.
Commands never raise on expected failures; they emit a notification and
return a falsy value instead.
"""

from __future__ import annotations

import random
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import TypeAdapter, ValidationError

from tally import state as transitions
from tally import transfer
from tally.codes import generate_distinct_code
from tally.colors import get_random_emoji, string_to_color
from tally.exceptions import GameNotFoundError, InvalidInputError, RoundNotFoundError, TallyError
from tally.models import Avatar, EmojiAvatar, Game, GameType, Player, PlayerScore, PokerHand, Round, new_id, repair_date
from tally.notifications import Notification, NotificationLevel, log_notification
from tally.reconciler import Reconciler
from tally.scoring import PlayerRanking, get_player_rankings
from tally.state import GameState
from tally.sync import DeleteGames, DeleteRounds

if TYPE_CHECKING:
    from tally.dal.remote_repository import SaveResult
    from tally.local_store import LocalStore
    from tally.notifications import Notifier
    from tally.sync import RemoteSync, SyncOperation

logger = structlog.get_logger()

_avatar_adapter: TypeAdapter[Avatar] = TypeAdapter(Avatar)


class TallyService:
    def __init__(
        self,
        local_store: LocalStore,
        remote_sync: RemoteSync | None = None,
        *,
        notify: Notifier = log_notification,
        product_name: str = "phase10",
        rng: random.Random | None = None,
    ) -> None:
        self._notify = notify
        self._remote_sync = remote_sync
        self._reconciler = Reconciler(local_store, remote_sync, notify)
        self._product_name = product_name
        self._rng = rng
        self._state = GameState()
        self._user_id: str | None = None
        self._ready = False
        if remote_sync is not None:
            remote_sync.set_save_callback(self._apply_save_result)

    # -- lifecycle -----------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def user_id(self) -> str | None:
        return self._user_id

    async def start(self, user_id: str | None = None) -> None:
        """Initial load. Commands are rejected until this completes."""
        await self._hydrate(user_id)

    async def set_identity(self, user_id: str | None) -> None:
        """Apply a sign-in, sign-out or account switch."""
        if self._ready and user_id == self._user_id:
            return
        logger.info("identity changed", previous_user_id=self._user_id, user_id=user_id)
        await self._hydrate(user_id)

    async def flush(self) -> None:
        if self._remote_sync is not None:
            await self._remote_sync.flush()

    async def close(self) -> None:
        if self._remote_sync is not None:
            await self._remote_sync.close()

    async def _hydrate(self, user_id: str | None) -> None:
        self._ready = False
        self._user_id = user_id
        try:
            with structlog.contextvars.bound_contextvars(user_id=user_id):
                self._state = await self._reconciler.hydrate(user_id)
        finally:
            self._ready = True

    # -- queries -------------------------------------------------------------

    @property
    def state(self) -> GameState:
        return self._state

    @property
    def games(self) -> tuple[Game, ...]:
        return self._state.games

    @property
    def players(self) -> tuple[Player, ...]:
        return self._state.players

    def get_game(self, game_id: str) -> Game | None:
        return self._state.get_game(game_id)

    def get_game_by_code(self, code: str) -> Game | None:
        """Exact-match lookup on a trimmed join code; notifies when nothing matches."""
        try:
            code = code.strip()
            if not code:
                raise InvalidInputError("Please enter a game code")
            game = self._state.find_game_by_code(code)
            if game is None:
                raise GameNotFoundError(f"No game found with code: {code}")
        except TallyError as exc:
            self._fail(exc)
            return None
        return game

    def rankings(self) -> list[PlayerRanking]:
        return get_player_rankings(self._state.games, self._state.players)

    # -- players -------------------------------------------------------------

    def add_player(self, name: str) -> str | None:
        """Create a player with a derived color and a random emoji avatar; return its id."""
        try:
            self._require_ready()
            name = name.strip()
            if not name:
                raise InvalidInputError("Player name cannot be empty")
            folded = name.casefold()
            if any(player.name.casefold() == folded for player in self._state.players):
                raise InvalidInputError(f'A player named "{name}" already exists')
            player = Player(
                name=name,
                color=string_to_color(name),
                avatar=EmojiAvatar(value=get_random_emoji(self._rng)),
            )
            self._commit(transitions.add_player(self._state, player))
        except TallyError as exc:
            self._fail(exc)
            return None
        logger.info("player added", player_id=player.id)
        self._notify(Notification(title="Player added", description=f"{name} has been added"))
        return player.id

    def update_player_avatar(self, player_id: str, avatar: Avatar | dict) -> bool:
        try:
            self._require_ready()
            try:
                parsed = _avatar_adapter.validate_python(avatar)
            except ValidationError as exc:
                raise InvalidInputError(f"Invalid avatar: {exc.error_count()} validation error(s)") from exc
            self._commit(transitions.update_player(self._state, player_id, avatar=parsed))
        except TallyError as exc:
            self._fail(exc)
            return False
        return True

    def update_player_manual_total(self, player_id: str, manual_total: int | None) -> bool:
        """Set or clear (``None``) the ranking override for a player."""
        try:
            self._require_ready()
            if manual_total is not None and (isinstance(manual_total, bool) or not isinstance(manual_total, int)):
                raise InvalidInputError("Manual total must be a whole number")
            self._commit(transitions.update_player(self._state, player_id, manual_total=manual_total))
        except TallyError as exc:
            self._fail(exc)
            return False
        return True

    def update_player_money(self, player_id: str, delta: float) -> bool:
        try:
            self._require_ready()
            player = self._state.get_player(player_id)
            if player is None:
                raise InvalidInputError(f"No player with id '{player_id}'")
            self._commit(transitions.update_player(self._state, player_id, money=player.money + delta))
        except TallyError as exc:
            self._fail(exc)
            return False
        return True

    # -- games ---------------------------------------------------------------

    def create_game(
        self,
        date: datetime | str | None,
        player_ids: Sequence[str],
        game_type: GameType | str = GameType.PHASE10,
    ) -> str | None:
        """Create a game with a fresh join code; return its id."""
        try:
            self._require_ready()
            try:
                game_type = GameType(game_type)
            except ValueError as exc:
                raise InvalidInputError(f"Unknown game type: {game_type}") from exc
            participants = list(dict.fromkeys(player_ids))
            if not participants:
                raise InvalidInputError("Select at least one player")
            unknown = [pid for pid in participants if self._state.get_player(pid) is None]
            if unknown:
                raise InvalidInputError(f"Unknown players: {', '.join(unknown)}")
            if date is None:
                game_date = datetime.now(tz=UTC)
            else:
                game_date, _ = repair_date(date, source="create_game")
            game = Game(
                unique_code=generate_distinct_code(self._state.codes_in_use, self._rng),
                date=game_date,
                game_type=game_type,
                player_ids=tuple(participants),
            )
            self._commit(transitions.add_games(self._state, [game]))
        except TallyError as exc:
            self._fail(exc)
            return None
        logger.info("game created", game_id=game.id, game_type=game.game_type, players=len(participants))
        self._notify(
            Notification(title="Game created", description=f"New game created with {len(participants)} players"),
        )
        return game.id

    def delete_game(self, game_id: str) -> bool:
        return self.delete_games([game_id]) == 1

    def delete_games(self, game_ids: Iterable[str]) -> int:
        """Delete games with their rounds and scores; return how many were removed."""
        try:
            self._require_ready()
            doomed = tuple(dict.fromkeys(game_ids))
            missing = [gid for gid in doomed if self._state.get_game(gid) is None]
            if missing:
                raise GameNotFoundError(f"No game with id '{missing[0]}'")
            if not doomed:
                return 0
            self._commit(transitions.remove_games(self._state, doomed), DeleteGames(doomed))
        except TallyError as exc:
            self._fail(exc)
            return 0
        logger.info("games deleted", game_ids=doomed)
        noun = "game has" if len(doomed) == 1 else "games have"
        self._notify(Notification(title="Game deleted", description=f"{len(doomed)} {noun} been deleted"))
        return len(doomed)

    # -- rounds --------------------------------------------------------------

    def add_round(
        self,
        game_id: str,
        player_scores: Sequence[PlayerScore | dict],
        *,
        pot_amount: float | None = None,
        winner_id: str | None = None,
        winning_hand: PokerHand | str | None = None,
    ) -> str | None:
        """Append a round to a game; return the round id."""
        try:
            self._require_ready()
            game = self._require_game(game_id)
            game_round = self._build_round(game, new_id(), player_scores, pot_amount, winner_id, winning_hand)
            self._commit(transitions.append_round(self._state, game_id, game_round))
        except TallyError as exc:
            self._fail(exc)
            return None
        logger.info("round added", game_id=game_id, round_id=game_round.id, scores=len(game_round.player_scores))
        self._notify(Notification(title="Round added", description=f"Round {len(game.rounds) + 1} has been added"))
        return game_round.id

    def update_round(
        self,
        game_id: str,
        round_id: str,
        player_scores: Sequence[PlayerScore | dict],
        *,
        pot_amount: float | None = None,
        winner_id: str | None = None,
        winning_hand: PokerHand | str | None = None,
    ) -> bool:
        """Replace all scores of a round at once."""
        try:
            self._require_ready()
            game = self._require_game(game_id)
            existing = self._require_round(game, round_id)
            game_round = self._build_round(
                game,
                round_id,
                player_scores,
                pot_amount,
                winner_id,
                winning_hand,
                previous=existing,
            )
            self._commit(transitions.replace_round(self._state, game_id, game_round))
        except TallyError as exc:
            self._fail(exc)
            return False
        self._notify(Notification(title="Round updated", description="Scores have been updated"))
        return True

    def update_player_score(self, game_id: str, round_id: str, player_score: PlayerScore | dict) -> bool:
        """Replace one player's score in a round; the other scores are kept."""
        try:
            self._require_ready()
            game = self._require_game(game_id)
            existing = self._require_round(game, round_id)
            updated = self._coerce_score(player_score)
            if existing.score_for(updated.player_id) is None:
                raise InvalidInputError(f"Player '{updated.player_id}' has no score in this round")
            scores = [updated if ps.player_id == updated.player_id else ps for ps in existing.player_scores]
            game_round = self._build_round(
                game,
                round_id,
                scores,
                existing.pot_amount,
                existing.winner_id,
                existing.winning_hand,
                previous=existing,
            )
            self._commit(transitions.replace_round(self._state, game_id, game_round))
        except TallyError as exc:
            self._fail(exc)
            return False
        return True

    def delete_round(self, game_id: str, round_id: str) -> bool:
        try:
            self._require_ready()
            self._commit(transitions.remove_round(self._state, game_id, round_id), DeleteRounds((round_id,)))
        except TallyError as exc:
            self._fail(exc)
            return False
        logger.info("round deleted", game_id=game_id, round_id=round_id)
        self._notify(Notification(title="Round deleted", description="The round has been deleted"))
        return True

    # -- import / export -----------------------------------------------------

    def export_json(self) -> str:
        return transfer.export_json(self._state.games, self._state.players)

    def export_csv(self) -> str:
        return transfer.export_csv(self._state.games, self._state.players)

    def export_filename(self, extension: str) -> str:
        return transfer.export_filename(self._product_name, extension)

    def import_json(self, text: str) -> bool:
        """Replace all games and players with the contents of an export document."""
        try:
            self._require_ready()
            if not text or not text.strip():
                raise InvalidInputError("Please select a file to import")
            result = transfer.import_json(text)
            games = self._with_codes(result.games, taken=set())
            self._commit(GameState(games=tuple(games), players=tuple(result.players)))
        except TallyError as exc:
            self._fail(exc)
            return False
        description = f"Imported {len(games)} games and {len(result.players)} players"
        if result.report.dropped_game_ids:
            description += f" ({len(result.report.dropped_game_ids)} games skipped)"
        self._notify(Notification(title="Import successful", description=description))
        return True

    def import_csv(self, text: str) -> bool:
        """Add the games and any new players from a CSV export."""
        try:
            self._require_ready()
            if not text or not text.strip():
                raise InvalidInputError("Please select a file to import")
            result = transfer.import_csv(text, self._state.players)
            games = self._with_codes(result.games, taken=self._state.codes_in_use)
            new_state = transitions.add_players(self._state, result.new_players)
            self._commit(transitions.add_games(new_state, games))
        except TallyError as exc:
            self._fail(exc)
            return False
        self._notify(
            Notification(
                title="Import successful",
                description=f"Imported {len(games)} games and {len(result.new_players)} new players",
            ),
        )
        return True

    # -- internals -----------------------------------------------------------

    def _require_ready(self) -> None:
        if not self._ready:
            raise InvalidInputError("Data is still loading")

    def _require_game(self, game_id: str) -> Game:
        game = self._state.get_game(game_id)
        if game is None:
            raise GameNotFoundError(f"No game with id '{game_id}'")
        return game

    @staticmethod
    def _require_round(game: Game, round_id: str) -> Round:
        game_round = game.get_round(round_id)
        if game_round is None:
            raise RoundNotFoundError(f"Game '{game.id}' has no round '{round_id}'")
        return game_round

    @staticmethod
    def _coerce_score(player_score: PlayerScore | dict) -> PlayerScore:
        if isinstance(player_score, PlayerScore):
            return player_score
        try:
            return PlayerScore.model_validate(player_score)
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid score: {exc.error_count()} validation error(s)") from exc

    def _build_round(
        self,
        game: Game,
        round_id: str,
        player_scores: Sequence[PlayerScore | dict],
        pot_amount: float | None,
        winner_id: str | None,
        winning_hand: PokerHand | str | None,
        previous: Round | None = None,
    ) -> Round:
        """Validate scores and normalize the game-type specific fields of a round.

        Scores keep the id they had in ``previous`` for the same player, or
        get a fresh one. Poker rounds derive ``is_winner`` from the winner;
        Phase 10 rounds never carry winner, hand or pot.
        """
        scores = [self._coerce_score(ps) for ps in player_scores]
        if not scores:
            raise InvalidInputError("A round needs at least one score")
        for player_score in scores:
            if self._state.get_player(player_score.player_id) is None:
                raise InvalidInputError(f"Unknown player '{player_score.player_id}'")

        if game.game_type == GameType.POKER:
            if winner_id is None:
                flagged = [ps.player_id for ps in scores if ps.is_winner]
                if len(flagged) > 1:
                    raise InvalidInputError("A round can have only one winner")
                winner_id = flagged[0] if flagged else None
            if winner_id is not None and all(ps.player_id != winner_id for ps in scores):
                raise InvalidInputError("The winner must have a score in this round")
            if winning_hand is not None:
                try:
                    winning_hand = PokerHand(winning_hand)
                except ValueError as exc:
                    raise InvalidInputError(f"Unknown poker hand: {winning_hand}") from exc
        else:
            winner_id = winning_hand = pot_amount = None

        normalized = []
        for player_score in scores:
            score_id = player_score.id
            if score_id is None and previous is not None:
                earlier = previous.score_for(player_score.player_id)
                score_id = earlier.id if earlier is not None else None
            normalized.append(
                player_score.model_copy(
                    update={"id": score_id or new_id(), "is_winner": player_score.player_id == winner_id},
                ),
            )

        try:
            return Round(
                id=round_id,
                player_scores=tuple(normalized),
                pot_amount=pot_amount,
                winner_id=winner_id,
                winning_hand=winning_hand,
            )
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid round: {exc.errors()[0]['msg']}") from exc

    def _with_codes(self, games: Iterable[Game], taken: set[str]) -> list[Game]:
        taken = set(taken)
        coded: list[Game] = []
        for game in games:
            if not game.unique_code:
                game = game.model_copy(update={"unique_code": generate_distinct_code(taken, self._rng)})
            taken.add(game.unique_code)
            coded.append(game)
        return coded

    def _commit(self, new_state: GameState, remote_operation: SyncOperation | None = None) -> None:
        """Swap in the new snapshot, then persist it. A local write failure keeps the in-memory change."""
        self._state = new_state
        try:
            self._reconciler.persist(new_state, self._user_id, remote_operation)
        except OSError as exc:
            logger.error("could not save to local store", error=str(exc))
            self._notify(
                Notification(
                    title="Save failed",
                    description="Changes could not be saved on this device",
                    level=NotificationLevel.ERROR,
                ),
            )

    def _fail(self, exc: TallyError) -> None:
        logger.info("command rejected", error_type=type(exc).__name__, error=str(exc))
        self._notify(Notification(title=exc.title, description=str(exc), level=NotificationLevel.ERROR))

    def _apply_save_result(self, user_id: str, result: SaveResult) -> None:
        """Fold codes and score ids assigned by the remote store back into the live state."""
        if user_id != self._user_id:
            return
        games = []
        for game in self._state.games:
            update: dict[str, object] = {}
            code = result.assigned_codes.get(game.id)
            if code and not game.unique_code:
                update["unique_code"] = code
            rounds = tuple(self._with_score_ids(r, result.assigned_score_ids.get(r.id)) for r in game.rounds)
            if rounds != game.rounds:
                update["rounds"] = rounds
            games.append(game.model_copy(update=update) if update else game)
        self._state = self._state.model_copy(update={"games": tuple(games)})
        try:
            self._reconciler.save_local(self._state)
        except OSError as exc:
            logger.error("could not save to local store", error=str(exc))

    @staticmethod
    def _with_score_ids(game_round: Round, assigned: dict[str, str] | None) -> Round:
        if not assigned:
            return game_round
        scores = tuple(
            ps.model_copy(update={"id": assigned[ps.player_id]}) if ps.id is None and ps.player_id in assigned else ps
            for ps in game_round.player_scores
        )
        return game_round.model_copy(update={"player_scores": scores})
