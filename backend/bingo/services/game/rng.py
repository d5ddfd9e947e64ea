"""Seeded linear congruential generator shared by every board reader.

The recurrence must stay bit-for-bit identical to the one boards were
generated with historically, otherwise stored seeds stop reproducing the
same boards.
"""

from typing import Callable

_MULTIPLIER = 9301
_INCREMENT = 49297
_MODULUS = 233280


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def hash_seed(seed: str) -> int:
    """Polynomial rolling hash (``h = h * 31 + code``) over UTF-16 code units."""
    h = 0
    data = seed.encode('utf-16-le')
    for i in range(0, len(data), 2):
        code = data[i] | (data[i + 1] << 8)
        h = _to_int32((h << 5) - h + code)
    return h


def seeded_random(seed: str) -> Callable[[], float]:
    """Return a generator yielding floats in ``[0, 1)`` determined by ``seed``."""
    state = abs(hash_seed(seed))

    def _next() -> float:
        nonlocal state
        state = (state * _MULTIPLIER + _INCREMENT) % _MODULUS
        return state / _MODULUS

    return _next
