from datetime import UTC, date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from tally.models import (
    EmojiAvatar,
    Game,
    GameType,
    ImageAvatar,
    LetterAvatar,
    Player,
    PlayerScore,
    PokerHand,
    Round,
    parse_date,
    repair_date,
)


class TestGameType:
    def test_values(self):
        assert GameType("Phase 10") is GameType.PHASE10
        assert GameType("Poker") is GameType.POKER

    @pytest.mark.parametrize("raw", ["Phase10", "phase 10", "PHASE10"])
    def test_accepts_legacy_spellings(self, raw):
        assert GameType(raw) is GameType.PHASE10

    def test_rejects_unknown(self):
        with pytest.raises(ValueError):
            GameType("Chess")


class TestAvatar:
    def test_discriminated_by_type(self):
        player = Player.model_validate({"name": "A", "avatar": {"type": "emoji", "value": "🦊"}})
        assert player.avatar == EmojiAvatar(value="🦊")

    def test_image_accepts_value_key(self):
        player = Player.model_validate({"name": "A", "avatar": {"type": "image", "value": "https://x/a.png"}})
        assert player.avatar == ImageAvatar(url="https://x/a.png")

    def test_letter_round_trips(self):
        player = Player(name="A", avatar=LetterAvatar())
        assert Player.model_validate(player.to_wire()).avatar == LetterAvatar()

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            Player.model_validate({"name": "A", "avatar": {"type": "hologram"}})


class TestPlayer:
    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            Player(name="")

    def test_wire_format_is_camel_case_without_nulls(self):
        wire = Player(id="p1", name="Alice", color="hsl(1, 65%, 45%)", manual_total=12).to_wire()
        assert wire == {"id": "p1", "name": "Alice", "color": "hsl(1, 65%, 45%)", "manualTotal": 12, "money": 0}

    def test_frozen(self):
        player = Player(name="Alice")
        with pytest.raises(ValidationError):
            player.name = "Bob"


class TestRound:
    def test_phase_bounds(self):
        with pytest.raises(ValidationError):
            PlayerScore(player_id="p1", phase=11)
        with pytest.raises(ValidationError):
            PlayerScore(player_id="p1", phase=0)

    def test_rejects_two_scores_for_one_player(self):
        with pytest.raises(ValidationError, match="Duplicate score"):
            Round(player_scores=(PlayerScore(player_id="p1"), PlayerScore(player_id="p1")))

    def test_score_for(self):
        game_round = Round(player_scores=(PlayerScore(player_id="p1", score=5),))
        assert game_round.score_for("p1").score == 5
        assert game_round.score_for("p2") is None

    def test_winning_hand_is_a_poker_hand(self):
        assert Round(winning_hand="Straight").winning_hand is PokerHand.STRAIGHT
        assert Round(winning_hand="Five Aces").winning_hand is None


class TestGame:
    def test_naive_date_is_utc(self):
        game = Game(date=datetime(2024, 1, 1, 12))  # noqa: DTZ001
        assert game.date == datetime(2024, 1, 1, 12, tzinfo=UTC)

    def test_offset_date_converted_to_utc(self):
        game = Game(date=datetime(2024, 1, 1, 12, tzinfo=timezone(timedelta(hours=2))))
        assert game.date == datetime(2024, 1, 1, 10, tzinfo=UTC)

    def test_reads_wire_format(self):
        game = Game.model_validate(
            {"id": "g1", "date": "2024-01-01T00:00:00Z", "gameType": "Poker", "playerIds": ["p1"], "uniqueCode": "a-b-c"},
        )
        assert game.game_type is GameType.POKER
        assert game.player_ids == ("p1",)
        assert game.unique_code == "a-b-c"
        assert game.has_player("p1")

    def test_consistent_round_kept_as_is(self):
        game_round = Round(player_scores=(PlayerScore(player_id="p1", is_winner=True),), winner_id="p1")
        game = Game(date=datetime(2024, 1, 1, tzinfo=UTC), game_type=GameType.POKER, rounds=(game_round,))
        assert game.rounds[0] == game_round

    def test_phase10_winner_flags_cleared(self):
        game_round = Round(player_scores=(PlayerScore(player_id="p1", is_winner=True),), winner_id="p1", pot_amount=4)
        game = Game(date=datetime(2024, 1, 1, tzinfo=UTC), rounds=(game_round,))
        assert game.rounds[0].winner_id is None
        assert game.rounds[0].pot_amount is None
        assert not game.rounds[0].player_scores[0].is_winner


class TestParseDate:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("2024-01-01T10:00:00.000Z", datetime(2024, 1, 1, 10, tzinfo=UTC)),
            ("2024-01-01", datetime(2024, 1, 1, tzinfo=UTC)),
            (date(2024, 1, 1), datetime(2024, 1, 1, tzinfo=UTC)),
            (1704067200000, datetime(2024, 1, 1, tzinfo=UTC)),
        ],
    )
    def test_accepted_forms(self, raw, expected):
        assert parse_date(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "not a date", True, float("nan"), {"y": 2024}])
    def test_unreadable(self, raw):
        assert parse_date(raw) is None


class TestRepairDate:
    def test_valid_date_untouched(self):
        assert repair_date("2024-01-01") == (datetime(2024, 1, 1, tzinfo=UTC), False)

    def test_invalid_date_becomes_now_and_is_logged(self, caplog):
        now = datetime(2025, 6, 1, tzinfo=UTC)

        result = repair_date("garbage", now=now, game_id="g1")

        assert result == (now, True)
        assert "invalid date replaced with current time" in caplog.text
