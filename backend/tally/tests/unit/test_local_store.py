import json
from datetime import UTC, datetime
from unittest.mock import patch

from tally.local_store import GAMES_KEY, PLAYERS_KEY, SCHEMA_VERSION, LocalStore
from tally.models import EmojiAvatar, GameType
from tally.tests.helpers import make_game, make_player, make_round, make_score


class TestRoundTrip:
    def test_first_run_is_empty(self, local_store):
        state = local_store.load()

        assert state.games == ()
        assert state.players == ()

    def test_save_then_load(self, local_store):
        alice = make_player("Alice", color="hsl(1, 65%, 45%)", avatar=EmojiAvatar(value="🦊"))
        game = make_game(
            [alice.id],
            [make_round(make_score(alice.id, 5, phase=2, completed=True, score_id="s1"), round_id="r1")],
            unique_code="apple-banana-cherry",
        )

        local_store.save([game], [alice])
        state = local_store.load()

        assert state.games == (game,)
        assert state.players == (alice,)

    def test_writes_versioned_envelopes(self, local_store, storage):
        local_store.save([make_game(["p-alice"])], [make_player("Alice")])

        games = json.loads(storage.get(GAMES_KEY))
        players = json.loads(storage.get(PLAYERS_KEY))
        assert games["version"] == SCHEMA_VERSION
        assert games["data"][0]["playerIds"] == ["p-alice"]
        assert games["data"][0]["date"] == "2024-01-01T00:00:00Z"
        assert players["data"][0]["name"] == "Alice"


class TestCorruption:
    def test_corrupt_games_keep_players(self, local_store, storage):
        local_store.save([make_game(["p-alice"])], [make_player("Alice")])
        storage.set(GAMES_KEY, "{not json")

        state = local_store.load()

        assert state.games == ()
        assert [p.name for p in state.players] == ["Alice"]

    def test_corrupt_players_keep_games(self, local_store, storage):
        local_store.save([make_game(["p-alice"])], [make_player("Alice")])
        storage.set(PLAYERS_KEY, json.dumps({"version": 1, "data": [{"name": ""}]}))

        state = local_store.load()

        assert [g.id for g in state.games] == ["g1"]
        assert state.players == ()

    def test_newer_schema_is_treated_as_corrupt(self, local_store, storage, caplog):
        storage.set(GAMES_KEY, json.dumps({"version": SCHEMA_VERSION + 1, "data": []}))

        assert local_store.load().games == ()
        assert "corrupt local namespace" in caplog.text

    def test_unreadable_storage_is_empty(self, local_store, storage):
        with patch.object(storage, "get", side_effect=OSError("permission denied")):
            state = local_store.load()

        assert state.is_empty

    def test_bad_date_becomes_now(self, local_store, storage):
        storage.set(
            GAMES_KEY,
            json.dumps({"version": 1, "data": [{"id": "g1", "date": "yesterday-ish", "playerIds": []}]}),
        )
        before = datetime.now(tz=UTC)

        game = local_store.load().games[0]

        assert game.date >= before

    def test_inconsistent_winner_fields_are_normalized(self, local_store, storage):
        rounds = [{"id": "r1", "winnerId": "a", "potAmount": 5, "playerScores": [{"playerId": "a", "isWinner": True}]}]
        storage.set(
            GAMES_KEY,
            json.dumps({"version": 1, "data": [{"id": "g1", "date": "2024-01-01", "playerIds": ["a"], "rounds": rounds}]}),
        )

        game_round = local_store.load().games[0].rounds[0]

        assert game_round.winner_id is None
        assert game_round.pot_amount is None
        assert not game_round.player_scores[0].is_winner


class TestLegacyMigration:
    def test_bare_arrays_are_migrated(self, storage):
        storage.set(PLAYERS_KEY, json.dumps([{"id": "p1", "name": "Alice"}]))
        storage.set(
            GAMES_KEY,
            json.dumps(
                [
                    {
                        "id": "g1",
                        "date": "2024-01-01T00:00:00.000Z",
                        "players": [{"id": "p1", "name": "Alice"}],
                        "rounds": [{"id": "r1", "playerScores": [{"playerId": "p1", "score": 5, "phase": 1}]}],
                    },
                ],
            ),
        )

        state = LocalStore(storage).load()

        game = state.games[0]
        assert game.game_type is GameType.PHASE10
        assert game.player_ids == ("p1",)
        assert game.rounds[0].score_for("p1").score == 5
        assert state.players[0].color is not None

    def test_next_save_upgrades_the_envelope(self, storage):
        storage.set(PLAYERS_KEY, json.dumps([{"id": "p1", "name": "Alice"}]))
        store = LocalStore(storage)

        state = store.load()
        store.save(state.games, state.players)

        assert json.loads(storage.get(PLAYERS_KEY))["version"] == SCHEMA_VERSION
