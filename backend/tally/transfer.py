"""JSON and CSV import/export of games and players.

JSON export is the full portable document::

    {"games": [...], "players": [...], "exportDate": "<ISO-8601>"}

where each game embeds its participants as full player objects. JSON
import replaces state wholesale; games that reference unknown players are
dropped (not an error). CSV is a flattened one-row-per-round view; CSV
import only ever adds players and games.
"""

import csv
import io
import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from tally.colors import get_random_emoji, string_to_color
from tally.exceptions import ImportFormatError
from tally.models import EmojiAvatar, Game, GameType, Player, PlayerScore, Round, new_id, repair_date

logger = structlog.get_logger()

CSV_DATE_COLUMN = "date"
SCORE_SUFFIX = "_score"
PHASE_SUFFIX = "_phase"
COMPLETED_SUFFIX = "_completed"
CSV_YES = "Yes"
CSV_NO = "No"


@dataclass
class ImportReport:
    """Non-fatal findings from an import.

    dropped_game_ids: games excluded for referencing unknown players.
    repaired_game_ids: games whose date was unreadable and set to the import time.
    """

    dropped_game_ids: list[str] = field(default_factory=list)
    repaired_game_ids: list[str] = field(default_factory=list)


@dataclass
class JsonImportResult:
    games: list[Game]
    players: list[Player]
    report: ImportReport


@dataclass
class CsvImportResult:
    games: list[Game]
    new_players: list[Player]
    report: ImportReport


def export_filename(product: str, extension: str, today: datetime | None = None) -> str:
    """``<product>_data_<YYYY-MM-DD>.<extension>``"""
    day = (today or datetime.now(tz=UTC)).strftime("%Y-%m-%d")
    return f"{product}_data_{day}.{extension}"


# -- export ------------------------------------------------------------------


def _game_document(game: Game, players_by_id: dict[str, Player]) -> dict[str, Any]:
    document = game.to_wire()
    document.pop("playerIds", None)
    document["players"] = [
        players_by_id[pid].to_wire() if pid in players_by_id else {"id": pid} for pid in game.player_ids
    ]
    return document


def build_export_document(
    games: Sequence[Game],
    players: Sequence[Player],
    export_date: datetime | None = None,
) -> dict[str, Any]:
    players_by_id = {player.id: player for player in players}
    return {
        "games": [_game_document(game, players_by_id) for game in games],
        "players": [player.to_wire() for player in players],
        "exportDate": (export_date or datetime.now(tz=UTC)).isoformat().replace("+00:00", "Z"),
    }


def export_json(games: Sequence[Game], players: Sequence[Player], export_date: datetime | None = None) -> str:
    return json.dumps(build_export_document(games, players, export_date), indent=2, ensure_ascii=False)


def export_csv(games: Sequence[Game], players: Sequence[Player]) -> str:
    """One row per (game, round); per-player columns only where the player scored."""
    names_by_id = {player.id: player.name for player in players}
    fieldnames: dict[str, None] = {CSV_DATE_COLUMN: None}
    rows: list[dict[str, Any]] = []
    for game in games:
        day = game.date.strftime("%Y-%m-%d")
        for game_round in game.rounds:
            row: dict[str, Any] = {CSV_DATE_COLUMN: day}
            for player_score in game_round.player_scores:
                name = names_by_id.get(player_score.player_id)
                if name is None:
                    continue
                row[f"{name}{SCORE_SUFFIX}"] = player_score.score
                row[f"{name}{PHASE_SUFFIX}"] = player_score.phase
                row[f"{name}{COMPLETED_SUFFIX}"] = CSV_YES if player_score.completed else CSV_NO
            fieldnames.update(dict.fromkeys(row))
            rows.append(row)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(fieldnames), restval="", lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()


# -- JSON import -------------------------------------------------------------


def _parse_player(record: object) -> Player:
    if not isinstance(record, dict):
        raise ImportFormatError("Every player must be a JSON object")
    data = {key: value for key, value in record.items() if value is not None}
    if not data.get("color") and isinstance(data.get("name"), str):
        data["color"] = string_to_color(data["name"])
    return Player.model_validate(data)


def _parse_game(record: object, now: datetime, report: ImportReport) -> Game:
    if not isinstance(record, dict):
        raise ImportFormatError("Every game must be a JSON object")
    data = dict(record)
    participants = data.pop("players", None)
    if "playerIds" not in data:
        if not isinstance(participants, list):
            raise ImportFormatError(f"Game '{data.get('id')}' has no player list")
        data["playerIds"] = [p.get("id") if isinstance(p, dict) else p for p in participants]
    data["date"], repaired = repair_date(data.get("date"), now=now, game_id=data.get("id"), source="json_import")
    if repaired:
        report.repaired_game_ids.append(str(data.get("id")))
    if not data.get("gameType"):
        data["gameType"] = GameType.PHASE10.value
    return Game.model_validate(data)


def references_known_players(game: Game, player_ids: set[str]) -> bool:
    """True when every participant and every round score points at a known player."""
    if not all(pid in player_ids for pid in game.player_ids):
        return False
    return all(ps.player_id in player_ids for game_round in game.rounds for ps in game_round.player_scores)


def import_json(text: str, now: datetime | None = None) -> JsonImportResult:
    """Parse an export document.

    Raises:
        ImportFormatError: Malformed JSON, missing games/players arrays, or
            a record that cannot be read at all. Nothing is returned in that case.

    """
    now = now or datetime.now(tz=UTC)
    try:
        document = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ImportFormatError(f"Not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise ImportFormatError("Expected a JSON object at the top level")
    raw_games = document.get("games")
    raw_players = document.get("players")
    if not isinstance(raw_games, list) or not isinstance(raw_players, list):
        raise ImportFormatError("Document must contain 'games' and 'players' arrays")

    report = ImportReport()
    try:
        players = [_parse_player(record) for record in raw_players]
        games = [_parse_game(record, now, report) for record in raw_games]
    except ValidationError as exc:
        raise ImportFormatError(f"Invalid record: {exc.error_count()} validation error(s)") from exc

    known = {player.id for player in players}
    accepted: list[Game] = []
    for game in games:
        if references_known_players(game, known):
            accepted.append(game)
        else:
            logger.warning("dropping imported game with unknown player references", game_id=game.id)
            report.dropped_game_ids.append(game.id)

    logger.info(
        "parsed JSON import",
        games=len(accepted),
        players=len(players),
        dropped=len(report.dropped_game_ids),
        repaired_dates=len(report.repaired_game_ids),
    )
    return JsonImportResult(games=accepted, players=players, report=report)


# -- CSV import --------------------------------------------------------------


def _parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    text = value.strip()
    if not text:
        return default
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        return default


def _has_score(row: dict[str, str | None], name: str) -> bool:
    value = row.get(f"{name}{SCORE_SUFFIX}")
    return value is not None and value.strip() != ""


def _player_names(headers: Iterable[str]) -> list[str]:
    names: list[str] = []
    for header in headers:
        if header.endswith(SCORE_SUFFIX) and len(header) > len(SCORE_SUFFIX):
            name = header[: -len(SCORE_SUFFIX)]
            if name not in names:
                names.append(name)
    return names


def import_csv(text: str, existing_players: Sequence[Player], now: datetime | None = None) -> CsvImportResult:
    """Parse a CSV export into new games, reusing players matched by exact name.

    Rows are grouped by their ``date`` cell; each distinct date becomes one
    Phase 10 game with one round per row.

    Raises:
        ImportFormatError: No header, no ``date`` column, no ``<name>_score``
            column, no data rows, or a value that fails validation.

    """
    now = now or datetime.now(tz=UTC)
    reader = csv.DictReader(io.StringIO(text))
    headers = [h.strip() for h in reader.fieldnames or []]
    if not headers:
        raise ImportFormatError("CSV has no header row")
    reader.fieldnames = headers
    if CSV_DATE_COLUMN not in headers:
        raise ImportFormatError(f"CSV is missing the '{CSV_DATE_COLUMN}' column")
    names = _player_names(headers)
    if not names:
        raise ImportFormatError(f"CSV has no '<name>{SCORE_SUFFIX}' columns")

    try:
        rows = [row for row in reader if any((value or "").strip() for value in row.values() if isinstance(value, str))]
    except csv.Error as exc:
        raise ImportFormatError(f"Malformed CSV: {exc}") from exc
    if not rows:
        raise ImportFormatError("CSV contains no data rows")

    existing_by_name = {player.name: player for player in existing_players}
    folded_names = {player.name.casefold(): player.name for player in existing_players}
    new_players: list[Player] = []
    ids_by_name: dict[str, str] = {}
    for name in names:
        player = existing_by_name.get(name)
        if player is None:
            similar = folded_names.get(name.casefold())
            if similar is not None:
                logger.warning("CSV player differs from an existing player only by case", name=name, existing=similar)
            player = Player(name=name, color=string_to_color(name), avatar=EmojiAvatar(value=get_random_emoji()))
            new_players.append(player)
        ids_by_name[name] = player.id

    rows_by_date: dict[str, list[dict[str, str | None]]] = {}
    for row in rows:
        rows_by_date.setdefault((row.get(CSV_DATE_COLUMN) or "").strip(), []).append(row)

    report = ImportReport()
    games: list[Game] = []
    try:
        for day, day_rows in rows_by_date.items():
            game_id = new_id()
            date, repaired = repair_date(day, now=now, game_id=game_id, source="csv_import")
            if repaired:
                report.repaired_game_ids.append(game_id)
            participants = [name for name in names if any(_has_score(row, name) for row in day_rows)]
            rounds = tuple(
                Round(
                    player_scores=tuple(
                        PlayerScore(
                            id=new_id(),
                            player_id=ids_by_name[name],
                            score=_parse_int(row.get(f"{name}{SCORE_SUFFIX}"), 0),
                            phase=_parse_int(row.get(f"{name}{PHASE_SUFFIX}"), 1),
                            completed=(row.get(f"{name}{COMPLETED_SUFFIX}") or "").strip().lower() == CSV_YES.lower(),
                        )
                        for name in participants
                        if _has_score(row, name)
                    ),
                )
                for row in day_rows
            )
            games.append(
                Game(
                    id=game_id,
                    date=date,
                    game_type=GameType.PHASE10,
                    player_ids=tuple(ids_by_name[name] for name in participants),
                    rounds=rounds,
                ),
            )
    except ValidationError as exc:
        raise ImportFormatError(f"Invalid CSV value: {exc.error_count()} validation error(s)") from exc

    logger.info("parsed CSV import", games=len(games), new_players=len(new_players))
    return CsvImportResult(games=games, new_players=new_players, report=report)
