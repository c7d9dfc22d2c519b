"""Three-word join codes for locating a game without its opaque id.

Codes are drawn from a small fixed dictionary, so two games can receive
the same code. Callers that need uniqueness use generate_distinct_code.
"""

import random
from collections.abc import Collection

from tally.exceptions import CodeExhaustedError

WORDS: tuple[str, ...] = (
    "apple", "banana", "cherry", "date", "elder", "fig", "grape", "honey",
    "iris", "jazz", "kiwi", "lemon", "mango", "ninja", "olive", "peach",
    "queen", "ruby", "spark", "tiger", "umbra", "vital", "waltz", "xenon",
    "yacht", "zebra", "amber", "birch", "coral", "daisy", "eagle", "fern",
    "glow", "harbor", "indigo", "juniper", "koala", "lotus", "meadow", "noble",
    "ocean", "pearl", "quartz", "river", "silver", "tulip", "unite", "velvet",
    "willow", "xylophone", "zephyr", "azure", "breeze", "crimson", "dusk",
)  # fmt: skip

CODE_WORD_COUNT = 3
CODE_SEPARATOR = "-"

# Attempts before generate_distinct_code gives up. With 55**3 codes this
# only trips when nearly every code is taken.
MAX_CODE_ATTEMPTS = 1000

_rng = random.SystemRandom()


def generate_unique_code(rng: random.Random | None = None) -> str:
    """Return three independently drawn dictionary words joined by hyphens."""
    source = rng or _rng
    return CODE_SEPARATOR.join(source.choice(WORDS) for _ in range(CODE_WORD_COUNT))


def is_valid_code(code: str | None) -> bool:
    """True when the code splits on hyphens into exactly three non-empty parts."""
    if not code:
        return False
    parts = code.split(CODE_SEPARATOR)
    return len(parts) == CODE_WORD_COUNT and all(part.strip() for part in parts)


def generate_distinct_code(taken: Collection[str], rng: random.Random | None = None) -> str:
    """Regenerate until the code is not in ``taken``."""
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_unique_code(rng)
        if code not in taken:
            return code
    raise CodeExhaustedError(f"Could not find a free join code after {MAX_CODE_ATTEMPTS} attempts")
