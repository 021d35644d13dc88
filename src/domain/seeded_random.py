import math
from typing import Union

UINT32_MASK = 0xFFFFFFFF
UINT32_RANGE = 4294967296
MULBERRY_INCREMENT = 0x6D2B79F5


def _imul(a: int, b: int) -> int:
    """32-bit multiplication with wrap-around, on unsigned operands."""
    return (a * b) & UINT32_MASK


def string_to_uint32(value: str) -> int:
    """
    Polynomial (base 31) hash folded into an unsigned 32-bit integer.

    Iterates over UTF-16 code units so that keys hash the same way the
    visualization client hashes them.
    """
    encoded = value.encode("utf-16-le")
    hash_value = 0
    for index in range(0, len(encoded), 2):
        code_unit = encoded[index] | (encoded[index + 1] << 8)
        hash_value = (hash_value * 31 + code_unit) & UINT32_MASK
    return hash_value


def seed_for(key: Union[str, int]) -> int:
    """Derives a 32-bit seed from a stable key (repository id, commit sha, type label...)."""
    return string_to_uint32(str(key))


class SeededGenerator:
    """
    Deterministic pseudo-random stream (mulberry32) with explicit 32-bit state.

    Two generators built from the same seed yield identical sequences; nothing
    is shared between instances.
    """

    def __init__(self, seed: int):
        self._state = seed & UINT32_MASK

    @property
    def state(self) -> int:
        return self._state

    def next(self) -> float:
        """Returns the next float in [0, 1)."""
        self._state = (self._state + MULBERRY_INCREMENT) & UINT32_MASK
        t = self._state
        r = _imul(t ^ (t >> 15), 1 | t)
        r ^= (r + _imul(r ^ (r >> 7), 61 | r)) & UINT32_MASK
        return ((r ^ (r >> 14)) & UINT32_MASK) / UINT32_RANGE

    def gauss(self, mean: float = 0.0, stdev: float = 1.0) -> float:
        """Normal sample via the Box-Muller transform over two draws."""
        u = 1.0 - self.next()  # (0, 1], keeps log() finite
        v = self.next()
        z = math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)
        return z * stdev + mean

    def shuffle(self, items: list) -> None:
        """In-place Fisher-Yates shuffle driven by this stream."""
        for i in range(len(items) - 1, 0, -1):
            j = math.floor(self.next() * (i + 1))
            items[i], items[j] = items[j], items[i]
