import random

import pytest

from tally.codes import CODE_SEPARATOR, WORDS, generate_distinct_code, generate_unique_code, is_valid_code
from tally.exceptions import CodeExhaustedError, TallyError


class TestGenerateUniqueCode:
    def test_three_dictionary_words(self):
        parts = generate_unique_code().split(CODE_SEPARATOR)

        assert len(parts) == 3
        assert all(part in WORDS for part in parts)

    def test_generated_codes_are_valid(self):
        rng = random.Random(7)
        assert all(is_valid_code(generate_unique_code(rng)) for _ in range(200))

    def test_lowercase(self):
        code = generate_unique_code(random.Random(1))
        assert code == code.lower()

    def test_seeded_rng_is_reproducible(self):
        assert generate_unique_code(random.Random(42)) == generate_unique_code(random.Random(42))


class TestIsValidCode:
    @pytest.mark.parametrize("code", ["apple-banana-cherry", "a-b-c"])
    def test_valid(self, code):
        assert is_valid_code(code)

    @pytest.mark.parametrize("code", ["", None, "a-b", "a-b-c-d", "a--c", "-b-c", "a-b-", "a- -c"])
    def test_invalid(self, code):
        assert not is_valid_code(code)


class TestGenerateDistinctCode:
    def test_avoids_taken_codes(self):
        rng = random.Random(3)
        first = generate_unique_code(random.Random(3))

        code = generate_distinct_code({first}, rng)

        assert code != first
        assert is_valid_code(code)

    def test_gives_up_when_everything_is_taken(self):
        class _Always(random.Random):
            def choice(self, seq):
                return seq[0]

        taken = {CODE_SEPARATOR.join([WORDS[0]] * 3)}
        with pytest.raises(CodeExhaustedError, match="Could not find a free join code") as exc_info:
            generate_distinct_code(taken, _Always())
        assert isinstance(exc_info.value, TallyError)
