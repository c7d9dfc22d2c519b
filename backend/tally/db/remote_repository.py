"""SQLite-backed remote repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import TypeAdapter, ValidationError

from tally.codes import generate_distinct_code
from tally.dal.remote_repository import RemoteRepository, SaveResult
from tally.exceptions import CodeExhaustedError, RemoteSyncError
from tally.models import Avatar, Game, GameType, Player, PlayerScore, Round, new_id, repair_date
from tally.state import GameState

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tally.db.connection import Database

logger = structlog.get_logger()

_avatar_adapter: TypeAdapter[Avatar] = TypeAdapter(Avatar)

_UPSERT_PLAYER = """\
INSERT INTO players (id, user_id, name, color, avatar, manual_total, money, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    name = excluded.name,
    color = excluded.color,
    avatar = excluded.avatar,
    manual_total = excluded.manual_total,
    money = excluded.money
WHERE players.user_id = excluded.user_id
"""

_UPSERT_GAME = """\
INSERT INTO games (id, user_id, unique_code, date, game_type, created_at)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    unique_code = excluded.unique_code,
    date = excluded.date,
    game_type = excluded.game_type
WHERE games.user_id = excluded.user_id
"""

_UPSERT_GAME_PLAYER = """\
INSERT INTO game_players (id, game_id, player_id, position)
VALUES (?, ?, ?, ?)
ON CONFLICT (game_id, player_id) DO UPDATE SET position = excluded.position
"""

_UPSERT_ROUND = """\
INSERT INTO rounds (id, game_id, round_number, pot_amount, winner_id, winning_hand, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    round_number = excluded.round_number,
    pot_amount = excluded.pot_amount,
    winner_id = excluded.winner_id,
    winning_hand = excluded.winning_hand
WHERE rounds.game_id = excluded.game_id
"""

_UPSERT_SCORE = """\
INSERT INTO player_scores (id, round_id, player_id, position, score, phase, completed, is_winner, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    player_id = excluded.player_id,
    position = excluded.position,
    score = excluded.score,
    phase = excluded.phase,
    completed = excluded.completed,
    is_winner = excluded.is_winner
WHERE player_scores.round_id = excluded.round_id
"""


def _placeholders(values: Sequence[object]) -> str:
    return ", ".join("?" for _ in values)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


class SqliteRemoteRepository(RemoteRepository):
    """SQLite implementation of RemoteRepository.

    Writes are serialized by an asyncio lock. save_all runs in one
    transaction so a failed save never leaves a round with only some of its
    scores. Deletes run step by step in foreign-key order; every step is
    attempted and all failures are reported together.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def load_all(self, user_id: str) -> GameState:
        """Rebuild the user's games and players from the relational rows."""
        try:
            players = [self._player_from_row(row) for row in self._fetch_players(user_id)]
            game_rows = self._db.connection.execute(
                "SELECT * FROM games WHERE user_id = ? ORDER BY created_at, rowid",
                (user_id,),
            ).fetchall()
            games = [self._assemble_game(row) for row in game_rows]
        except (sqlite3.Error, ValueError) as exc:
            raise RemoteSyncError("load_all", str(exc)) from exc

        taken = {game.unique_code for game in games if game.unique_code}
        backfilled: list[Game] = []
        for game in games:
            if not game.unique_code:
                try:
                    code = generate_distinct_code(taken)
                except CodeExhaustedError as exc:
                    raise RemoteSyncError("load_all", str(exc)) from exc
                taken.add(code)
                logger.info("backfilled missing join code", game_id=game.id, unique_code=code)
                game = game.model_copy(update={"unique_code": code})  # noqa: PLW2901
            backfilled.append(game)

        logger.info("loaded remote data", user_id=user_id, games=len(backfilled), players=len(players))
        return GameState(games=tuple(backfilled), players=tuple(players))

    async def save_all(self, games: Sequence[Game], players: Sequence[Player], user_id: str) -> SaveResult:
        """Upsert every player, game, player link, round and score for the user."""
        async with self._lock:
            conn = self._db.connection
            assigned_codes: dict[str, str] = {}
            assigned_score_ids: dict[str, dict[str, str]] = {}
            now = _now_iso()
            try:
                taken = self._codes_in_use(user_id) | {g.unique_code for g in games if g.unique_code}
                for player in players:
                    conn.execute(
                        _UPSERT_PLAYER,
                        (
                            player.id,
                            user_id,
                            player.name,
                            player.color,
                            json.dumps(player.avatar.to_wire()) if player.avatar else None,
                            player.manual_total,
                            player.money,
                            now,
                        ),
                    )
                for game in games:
                    code = game.unique_code
                    if not code:
                        code = generate_distinct_code(taken)
                        taken.add(code)
                        assigned_codes[game.id] = code
                    conn.execute(
                        _UPSERT_GAME,
                        (game.id, user_id, code, game.date.isoformat(), game.game_type.value, now),
                    )
                    if not self._owns_game(conn, game.id, user_id):
                        logger.warning("skipping game owned by another user", game_id=game.id, user_id=user_id)
                        assigned_codes.pop(game.id, None)
                        continue
                    self._save_player_links(conn, game)
                    for round_number, game_round in enumerate(game.rounds, start=1):
                        new_ids = self._save_round(conn, game.id, round_number, game_round, now)
                        if new_ids:
                            assigned_score_ids[game_round.id] = new_ids
                conn.commit()
            except (sqlite3.Error, CodeExhaustedError) as exc:
                conn.rollback()
                raise RemoteSyncError("save_all", str(exc)) from exc

        logger.debug("saved remote data", user_id=user_id, games=len(games), players=len(players))
        return SaveResult(assigned_codes=assigned_codes, assigned_score_ids=assigned_score_ids)

    async def delete_games(self, game_ids: Sequence[str], user_id: str) -> None:
        """Delete scores, rounds, player links and finally the games themselves."""
        if not game_ids:
            return
        async with self._lock:
            try:
                owned = self._owned_game_ids(game_ids, user_id)
            except sqlite3.Error as exc:
                raise RemoteSyncError("delete_games", str(exc)) from exc
            if not owned:
                return
            marks = _placeholders(owned)
            steps = [
                (
                    "player_scores",
                    f"DELETE FROM player_scores WHERE round_id IN (SELECT id FROM rounds WHERE game_id IN ({marks}))",  # noqa: S608
                    owned,
                ),
                ("rounds", f"DELETE FROM rounds WHERE game_id IN ({marks})", owned),  # noqa: S608
                ("game_players", f"DELETE FROM game_players WHERE game_id IN ({marks})", owned),  # noqa: S608
                ("games", f"DELETE FROM games WHERE user_id = ? AND id IN ({marks})", [user_id, *owned]),  # noqa: S608
            ]
            self._run_delete_steps("delete_games", steps)
        logger.info("deleted remote games", user_id=user_id, game_ids=owned)

    async def delete_rounds(self, round_ids: Sequence[str], user_id: str) -> None:
        """Delete the rounds' scores, then the rounds."""
        if not round_ids:
            return
        async with self._lock:
            try:
                marks = _placeholders(round_ids)
                rows = self._db.connection.execute(
                    "SELECT r.id FROM rounds r JOIN games g ON g.id = r.game_id "  # noqa: S608
                    f"WHERE g.user_id = ? AND r.id IN ({marks})",
                    (user_id, *round_ids),
                ).fetchall()
            except sqlite3.Error as exc:
                raise RemoteSyncError("delete_rounds", str(exc)) from exc
            owned = [row["id"] for row in rows]
            if not owned:
                return
            marks = _placeholders(owned)
            steps = [
                ("player_scores", f"DELETE FROM player_scores WHERE round_id IN ({marks})", owned),  # noqa: S608
                ("rounds", f"DELETE FROM rounds WHERE id IN ({marks})", owned),  # noqa: S608
            ]
            self._run_delete_steps("delete_rounds", steps)
        logger.info("deleted remote rounds", user_id=user_id, round_ids=owned)

    def _run_delete_steps(self, operation: str, steps: list[tuple[str, str, list[str]]]) -> None:
        conn = self._db.connection
        failures: list[str] = []
        for table, sql, params in steps:
            try:
                conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                logger.warning("remote delete step failed", operation=operation, table=table, error=str(exc))
                failures.append(f"{table}: {exc}")
        if failures:
            raise RemoteSyncError(operation, f"{len(failures)} delete step(s) failed", failures)

    def _owned_game_ids(self, game_ids: Sequence[str], user_id: str) -> list[str]:
        rows = self._db.connection.execute(
            f"SELECT id FROM games WHERE user_id = ? AND id IN ({_placeholders(game_ids)})",  # noqa: S608
            (user_id, *game_ids),
        ).fetchall()
        return [row["id"] for row in rows]

    def _codes_in_use(self, user_id: str) -> set[str]:
        rows = self._db.connection.execute(
            "SELECT unique_code FROM games WHERE user_id = ? AND unique_code IS NOT NULL",
            (user_id,),
        ).fetchall()
        return {row["unique_code"] for row in rows}

    @staticmethod
    def _owns_game(conn: sqlite3.Connection, game_id: str, user_id: str) -> bool:
        row = conn.execute("SELECT user_id FROM games WHERE id = ?", (game_id,)).fetchone()
        return row is not None and row["user_id"] == user_id

    @staticmethod
    def _save_player_links(conn: sqlite3.Connection, game: Game) -> None:
        for position, player_id in enumerate(game.player_ids):
            conn.execute(_UPSERT_GAME_PLAYER, (new_id(), game.id, player_id, position))
        if game.player_ids:
            conn.execute(
                f"DELETE FROM game_players WHERE game_id = ? AND player_id NOT IN ({_placeholders(game.player_ids)})",  # noqa: S608
                (game.id, *game.player_ids),
            )
        else:
            conn.execute("DELETE FROM game_players WHERE game_id = ?", (game.id,))

    @staticmethod
    def _save_round(
        conn: sqlite3.Connection,
        game_id: str,
        round_number: int,
        game_round: Round,
        now: str,
    ) -> dict[str, str]:
        """Upsert one round and its scores. Return ids generated for scores that had none."""
        conn.execute(
            _UPSERT_ROUND,
            (
                game_round.id,
                game_id,
                round_number,
                game_round.pot_amount,
                game_round.winner_id,
                game_round.winning_hand,
                now,
            ),
        )
        owner = conn.execute("SELECT game_id FROM rounds WHERE id = ?", (game_round.id,)).fetchone()
        if owner is None or owner["game_id"] != game_id:
            logger.warning("skipping round that belongs to another game", round_id=game_round.id, game_id=game_id)
            return {}
        assigned: dict[str, str] = {}
        score_ids: list[str] = []
        for position, player_score in enumerate(game_round.player_scores):
            score_id = player_score.id
            if not score_id:
                score_id = new_id()
                assigned[player_score.player_id] = score_id
            score_ids.append(score_id)
            conn.execute(
                _UPSERT_SCORE,
                (
                    score_id,
                    game_round.id,
                    player_score.player_id,
                    position,
                    player_score.score,
                    player_score.phase,
                    int(player_score.completed),
                    int(player_score.is_winner),
                    now,
                ),
            )
        # Scores removed from the round in memory are removed here too.
        if score_ids:
            conn.execute(
                f"DELETE FROM player_scores WHERE round_id = ? AND id NOT IN ({_placeholders(score_ids)})",  # noqa: S608
                (game_round.id, *score_ids),
            )
        else:
            conn.execute("DELETE FROM player_scores WHERE round_id = ?", (game_round.id,))
        return assigned

    def _fetch_players(self, user_id: str) -> list[sqlite3.Row]:
        return self._db.connection.execute(
            "SELECT * FROM players WHERE user_id = ? ORDER BY created_at, rowid",
            (user_id,),
        ).fetchall()

    def _assemble_game(self, row: sqlite3.Row) -> Game:
        conn = self._db.connection
        player_ids = [
            link["player_id"]
            for link in conn.execute(
                "SELECT player_id FROM game_players WHERE game_id = ? ORDER BY position, rowid",
                (row["id"],),
            ).fetchall()
        ]
        rounds = []
        for round_row in conn.execute(
            "SELECT * FROM rounds WHERE game_id = ? ORDER BY round_number, rowid",
            (row["id"],),
        ).fetchall():
            score_rows = conn.execute(
                "SELECT * FROM player_scores WHERE round_id = ? ORDER BY position, rowid",
                (round_row["id"],),
            ).fetchall()
            rounds.append(
                Round(
                    id=round_row["id"],
                    player_scores=tuple(
                        PlayerScore(
                            id=s["id"],
                            player_id=s["player_id"],
                            score=s["score"],
                            phase=s["phase"],
                            completed=bool(s["completed"]),
                            is_winner=bool(s["is_winner"]),
                        )
                        for s in score_rows
                    ),
                    pot_amount=round_row["pot_amount"],
                    winner_id=round_row["winner_id"],
                    winning_hand=round_row["winning_hand"],
                ),
            )
        date, _ = repair_date(row["date"], game_id=row["id"], source="remote")
        return Game(
            id=row["id"],
            unique_code=row["unique_code"],
            date=date,
            game_type=GameType(row["game_type"]) if row["game_type"] else GameType.PHASE10,
            player_ids=tuple(player_ids),
            rounds=tuple(rounds),
        )

    @staticmethod
    def _player_from_row(row: sqlite3.Row) -> Player:
        avatar = None
        if row["avatar"]:
            try:
                avatar = _avatar_adapter.validate_json(row["avatar"])
            except ValidationError:
                logger.warning("ignoring unreadable stored avatar", player_id=row["id"])
        return Player(
            id=row["id"],
            name=row["name"],
            color=row["color"],
            avatar=avatar,
            manual_total=row["manual_total"],
            money=row["money"],
        )
