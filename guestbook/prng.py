"""
Small deterministic PRNG (mulberry32) with the state held by the caller.

Same seed, same sequence, on every machine.  Used to scatter sample notes
reproducibly.
"""

from __future__ import annotations

MASK32 = 0xFFFFFFFF


def _imul(a: int, b: int) -> int:
    """32-bit wrapping multiply."""
    return (a * b) & MASK32


def _to_int32(x: int) -> int:
    x &= MASK32
    return x - (1 << 32) if x & 0x80000000 else x


class Mulberry32:
    def __init__(self, seed: int):
        self.state = seed & MASK32

    def next_float(self) -> float:
        """Uniform float in ``[0, 1)``."""
        self.state = (self.state + 0x6D2B79F5) & MASK32
        s = self.state
        t = _imul(s ^ (s >> 15), 1 | s)
        t = ((t + _imul(t ^ (t >> 7), 61 | t)) & MASK32) ^ t
        return ((t ^ (t >> 14)) & MASK32) / 4294967296

    def next_int(self, max_: int) -> int:
        """Uniform int in ``[0, max_)``."""
        return int(self.next_float() * max_)

    def next_range(self, lo: float, hi: float) -> float:
        return lo + self.next_float() * (hi - lo)


def hash_string(s: str) -> int:
    """31-multiplier string hash, as a signed 32-bit int."""
    h = 0
    for ch in s:
        h = _to_int32((h << 5) - h + ord(ch))
    return h
