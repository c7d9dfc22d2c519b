"""Local persistence of the full game/player snapshot.

Two namespaces are kept under separate keys so that a corrupt games entry
never takes valid players down with it. Each namespace is stored as a
versioned envelope::

    {"version": 1, "data": [...]}

A bare JSON array is a version 0 record written before envelopes existed;
it is migrated on load (game type defaulted, embedded player objects
reduced to ids, missing colors derived).
"""

import json
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError

from shared.storage import KeyValueStorage
from tally.colors import string_to_color
from tally.models import Game, GameType, Player, repair_date
from tally.state import GameState

logger = structlog.get_logger()

T = TypeVar("T")

GAMES_KEY = "phase10-games"
PLAYERS_KEY = "phase10-players"

SCHEMA_VERSION = 1


class LocalStoreFormatError(ValueError):
    """Stored payload does not match any known schema version."""


def _unwrap(payload: object) -> tuple[int, list[Any]]:
    if isinstance(payload, list):
        return 0, payload
    if isinstance(payload, dict) and isinstance(payload.get("version"), int) and isinstance(payload.get("data"), list):
        version = payload["version"]
        if version > SCHEMA_VERSION:
            raise LocalStoreFormatError(f"Stored schema version {version} is newer than supported {SCHEMA_VERSION}")
        return version, payload["data"]
    raise LocalStoreFormatError("Expected a JSON array or a versioned envelope")


def _require_object(record: object) -> dict[str, Any]:
    if not isinstance(record, dict):
        raise LocalStoreFormatError(f"Expected a JSON object, got {type(record).__name__}")
    return record


def migrate_game_record(record: dict[str, Any], version: int) -> dict[str, Any]:
    """Bring a stored game record up to the current schema."""
    migrated = dict(record)
    if version < 1:
        if "playerIds" not in migrated:
            migrated["playerIds"] = [p["id"] if isinstance(p, dict) else p for p in migrated.get("players") or []]
        migrated.pop("players", None)
    if not migrated.get("gameType"):
        migrated["gameType"] = GameType.PHASE10.value
    return migrated


def migrate_player_record(record: dict[str, Any], version: int) -> dict[str, Any]:  # noqa: ARG001
    migrated = dict(record)
    if not migrated.get("color") and isinstance(migrated.get("name"), str):
        migrated["color"] = string_to_color(migrated["name"])
    return migrated


def _parse_game(record: object, version: int) -> Game:
    migrated = migrate_game_record(_require_object(record), version)
    migrated["date"], _ = repair_date(migrated.get("date"), game_id=migrated.get("id"), source="local_store")
    return Game.model_validate(migrated)


def _parse_player(record: object, version: int) -> Player:
    return Player.model_validate(migrate_player_record(_require_object(record), version))


class LocalStore:
    """Reads and writes GameState through a synchronous key-value storage."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self._storage = storage

    def save(self, games: Iterable[Game], players: Iterable[Player]) -> None:
        """Write both namespaces. Completes before returning."""
        self._write(GAMES_KEY, [game.to_wire() for game in games])
        self._write(PLAYERS_KEY, [player.to_wire() for player in players])

    def load(self) -> GameState:
        """Read both namespaces. Absent keys give empty collections."""
        games = self._read(GAMES_KEY, _parse_game)
        players = self._read(PLAYERS_KEY, _parse_player)
        return GameState(games=tuple(games), players=tuple(players))

    def _write(self, key: str, records: list[dict[str, Any]]) -> None:
        payload = {"version": SCHEMA_VERSION, "data": records}
        self._storage.set(key, json.dumps(payload, ensure_ascii=False))

    def _read(self, key: str, parse_record: Callable[[object, int], T]) -> list[T]:
        try:
            raw = self._storage.get(key)
        except OSError as exc:
            logger.error("could not read local namespace, starting empty", key=key, error=str(exc))
            return []
        if raw is None:
            return []
        try:
            version, records = _unwrap(json.loads(raw))
            return [parse_record(record, version) for record in records]
        except (ValueError, TypeError, KeyError, ValidationError) as exc:
            logger.error("corrupt local namespace, starting empty", key=key, error=str(exc))
            return []
