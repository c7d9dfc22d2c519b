"""Domain models: players, games, rounds and per-round scores.

All models are frozen; state changes produce new instances via model_copy
(see tally.state). Fields are snake_case in Python and camelCase on the
wire (export documents and local storage).
"""

import math
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Self
from uuid import uuid4

import structlog
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = structlog.get_logger()


def new_id() -> str:
    return str(uuid4())


class GameType(StrEnum):
    PHASE10 = "Phase 10"
    POKER = "Poker"

    @classmethod
    def _missing_(cls, value: object) -> "GameType | None":
        # Older records spell it "Phase10" / "phase 10".
        if isinstance(value, str):
            normalized = value.replace(" ", "").lower()
            for member in cls:
                if member.value.replace(" ", "").lower() == normalized:
                    return member
        return None


class PokerHand(StrEnum):
    HIGH_CARD = "High Card"
    ONE_PAIR = "One Pair"
    TWO_PAIR = "Two Pair"
    THREE_OF_A_KIND = "Three of a Kind"
    STRAIGHT = "Straight"
    FLUSH = "Flush"
    FULL_HOUSE = "Full House"
    FOUR_OF_A_KIND = "Four of a Kind"
    STRAIGHT_FLUSH = "Straight Flush"
    ROYAL_FLUSH = "Royal Flush"


class WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    def to_wire(self) -> dict:
        """Serialize with camelCase keys, dropping unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LetterAvatar(WireModel):
    """Render the first letter of the player's name."""

    type: Literal["letter"] = "letter"


class EmojiAvatar(WireModel):
    type: Literal["emoji"] = "emoji"
    value: str = Field(min_length=1)


class ImageAvatar(WireModel):
    type: Literal["image"] = "image"
    # older documents carry the url under "value"
    url: str = Field(min_length=1, validation_alias=AliasChoices("url", "value"))


Avatar = Annotated[LetterAvatar | EmojiAvatar | ImageAvatar, Field(discriminator="type")]


class Player(WireModel):
    id: str = Field(default_factory=new_id, min_length=1)
    name: str = Field(min_length=1)
    color: str | None = None
    avatar: Avatar | None = None
    manual_total: int | None = None  # overrides the computed grand total in rankings
    money: float = 0  # Poker balance


class PlayerScore(WireModel):
    id: str | None = None  # assigned before the score reaches the remote store
    player_id: str = Field(min_length=1)
    score: int = 0
    phase: int = Field(default=1, ge=1, le=10)
    completed: bool = False
    is_winner: bool = False  # Poker only, mirrors Round.winner_id


class Round(WireModel):
    id: str = Field(default_factory=new_id, min_length=1)
    player_scores: tuple[PlayerScore, ...] = ()
    pot_amount: float | None = None
    winner_id: str | None = None  # Poker only; Phase 10 winners are derived
    winning_hand: PokerHand | None = None

    @field_validator("winning_hand", mode="before")
    @classmethod
    def _known_hand(cls, value: object) -> object:
        if value is None or isinstance(value, PokerHand):
            return value
        try:
            return PokerHand(value)
        except (TypeError, ValueError):
            logger.warning("dropping unknown poker hand", winning_hand=repr(value))
            return None

    @model_validator(mode="after")
    def _one_score_per_player(self) -> Self:
        seen: set[str] = set()
        for player_score in self.player_scores:
            if player_score.player_id in seen:
                raise ValueError(f"Duplicate score for player '{player_score.player_id}' in round '{self.id}'")
            seen.add(player_score.player_id)
        return self

    def score_for(self, player_id: str) -> PlayerScore | None:
        for player_score in self.player_scores:
            if player_score.player_id == player_id:
                return player_score
        return None


class Game(WireModel):
    id: str = Field(default_factory=new_id, min_length=1)
    unique_code: str | None = None
    date: datetime
    game_type: GameType = GameType.PHASE10
    player_ids: tuple[str, ...] = ()  # references into the player list, in seating order
    rounds: tuple[Round, ...] = ()  # play order

    @field_validator("date")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)

    @field_validator("rounds")
    @classmethod
    def _consistent_winners(cls, rounds: tuple[Round, ...], info: ValidationInfo) -> tuple[Round, ...]:
        # game_type is declared before rounds, so it is already validated here
        game_type = info.data.get("game_type")
        if game_type is None:
            return rounds
        return tuple(normalize_winner(game_round, game_type, game_id=info.data.get("id")) for game_round in rounds)

    def has_player(self, player_id: str) -> bool:
        return player_id in self.player_ids

    def get_round(self, round_id: str) -> Round | None:
        for game_round in self.rounds:
            if game_round.id == round_id:
                return game_round
        return None


def normalize_winner(game_round: Round, game_type: GameType, **context: object) -> Round:
    """Make a round's winner fields agree with its game type.

    Phase 10 rounds lose winner, hand, pot and every ``is_winner`` flag. A
    Poker round without ``winner_id`` takes it from a single ``is_winner``
    flag; several flags, or a winner with no score in the round, leave the
    round without a winner. ``is_winner`` is then rewritten to mark exactly
    the winner.
    """
    scores = game_round.player_scores
    if game_type is not GameType.POKER:
        update: dict[str, Any] = {"winner_id": None, "winning_hand": None, "pot_amount": None}
        winner_id = None
    else:
        winner_id = game_round.winner_id
        if winner_id is None:
            flagged = [ps.player_id for ps in scores if ps.is_winner]
            if len(flagged) == 1:
                winner_id = flagged[0]
            elif flagged:
                logger.warning("dropping ambiguous round winner", round_id=game_round.id, flagged=flagged, **context)
        if winner_id is not None and game_round.score_for(winner_id) is None:
            logger.warning("dropping round winner without a score", round_id=game_round.id, winner_id=winner_id, **context)
            winner_id = None
        update = {"winner_id": winner_id}
        if winner_id is None:
            update["winning_hand"] = None

    update["player_scores"] = tuple(
        ps if ps.is_winner == (ps.player_id == winner_id) else ps.model_copy(update={"is_winner": not ps.is_winner})
        for ps in scores
    )
    if all(getattr(game_round, name) == value for name, value in update.items()):
        return game_round
    return game_round.model_copy(update=update)


def parse_date(value: object) -> datetime | None:
    """Parse a stored or imported date into an aware UTC datetime.

    Accepts datetime/date objects, ISO-8601 strings (date-only or full, "Z"
    suffix allowed) and epoch milliseconds. Returns None when the value
    cannot be interpreted as a point in time.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)  # noqa: DTZ001
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)


def repair_date(value: object, *, now: datetime | None = None, **context: object) -> tuple[datetime, bool]:
    """Return (date, repaired). Unparseable input becomes ``now`` and is logged."""
    parsed = parse_date(value)
    if parsed is not None:
        return parsed, False
    fallback = now or datetime.now(tz=UTC)
    logger.warning("invalid date replaced with current time", raw_date=repr(value), **context)
    return fallback, True
