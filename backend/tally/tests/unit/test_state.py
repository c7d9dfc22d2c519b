import pytest

from tally.exceptions import GameNotFoundError, InvalidInputError, RoundNotFoundError
from tally.state import (
    GameState,
    add_games,
    add_player,
    append_round,
    remove_games,
    remove_round,
    replace_round,
    update_player,
)
from tally.tests.helpers import make_game, make_player, make_round, make_score


@pytest.fixture
def state():
    alice, bob = make_player("Alice"), make_player("Bob")
    game = make_game(
        [alice.id, bob.id],
        [make_round(make_score(alice.id, 5), make_score(bob.id, 10), round_id="r1")],
        unique_code="apple-banana-cherry",
    )
    return GameState(games=(game,), players=(alice, bob))


class TestQueries:
    def test_empty(self):
        assert GameState().is_empty

    def test_lookups(self, state):
        assert state.get_game("g1").id == "g1"
        assert state.get_game("nope") is None
        assert state.get_player("p-bob").name == "Bob"
        assert state.find_game_by_code("apple-banana-cherry").id == "g1"
        assert state.find_game_by_code("apple-banana") is None
        assert state.codes_in_use == {"apple-banana-cherry"}


class TestTransitions:
    def test_inputs_are_never_mutated(self, state):
        before = state.model_dump()

        add_player(state, make_player("Cleo"))
        append_round(state, "g1", make_round(make_score("p-alice", 1)))
        remove_games(state, ["g1"])

        assert state.model_dump() == before

    def test_add_games_appends(self, state):
        new_state = add_games(state, [make_game(["p-alice"], game_id="g2")])

        assert [g.id for g in new_state.games] == ["g1", "g2"]

    def test_append_round_to_unknown_game(self, state):
        with pytest.raises(GameNotFoundError):
            append_round(state, "nope", make_round())

    def test_replace_round(self, state):
        new_round = make_round(make_score("p-alice", 99), round_id="r1")

        new_state = replace_round(state, "g1", new_round)

        assert new_state.get_game("g1").rounds == (new_round,)

    def test_replace_unknown_round(self, state):
        with pytest.raises(RoundNotFoundError):
            replace_round(state, "g1", make_round(round_id="r9"))

    def test_remove_round(self, state):
        assert remove_round(state, "g1", "r1").get_game("g1").rounds == ()

    def test_update_player(self, state):
        new_state = update_player(state, "p-alice", manual_total=7, money=2.5)

        alice = new_state.get_player("p-alice")
        assert (alice.manual_total, alice.money) == (7, 2.5)

    def test_update_player_rejects_id_change(self, state):
        with pytest.raises(InvalidInputError, match="Invalid player fields"):
            update_player(state, "p-alice", id="other")

    def test_update_unknown_player(self, state):
        with pytest.raises(InvalidInputError, match="No player"):
            update_player(state, "p-zed", money=1)
