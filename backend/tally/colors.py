"""Derived player attributes: name color and default emoji avatar."""

import random

# Legibility bounds against both light and dark backgrounds.
SATURATION_RANGE = (65, 85)
LIGHTNESS_RANGE = (45, 55)

_HASH_BASE = 31
_HASH_MODULUS = 2**32

EMOJI_OPTIONS: tuple[str, ...] = (
    "😀", "😎", "🤩", "🥳", "🙄", "😍", "🤔", "🤓",
    "👻", "👽", "🤖", "🐶", "🐱", "🐭", "🐰", "🦊",
)  # fmt: skip

_rng = random.Random()


def name_hash(name: str) -> int:
    """Polynomial rolling hash over Unicode code points, base 31, mod 2**32.

    Independent of PYTHONHASHSEED, so the same name maps to the same value
    on every platform and in every process.
    """
    value = 0
    for char in name:
        value = (value * _HASH_BASE + ord(char)) % _HASH_MODULUS
    return value


def _within(low: int, high: int, value: int) -> int:
    return low + value % (high - low + 1)


def string_to_color(name: str) -> str:
    """Map a name to an ``hsl(h, s%, l%)`` color with bounded saturation and lightness."""
    value = name_hash(name)
    hue = value % 360
    saturation = _within(*SATURATION_RANGE, value >> 9)
    lightness = _within(*LIGHTNESS_RANGE, value >> 17)
    return f"hsl({hue}, {saturation}%, {lightness}%)"


def get_random_emoji(rng: random.Random | None = None) -> str:
    return (rng or _rng).choice(EMOJI_OPTIONS)
