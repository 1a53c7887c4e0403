"""
Circom-compatible Poseidon hash over the BN254 scalar field.

Round constants and MDS matrices are regenerated from the reference Grain
LFSR parameter generator (the same procedure circomlib used), so every
arity from 1 to 16 inputs is supported without shipping constant tables.
Generated parameters are cached per state width.
"""
from __future__ import annotations

from functools import lru_cache
from typing import List, Sequence, Tuple

from shinobi.crypto_core.field import SNARK_SCALAR_FIELD

FIELD_BITS = 254
N_ROUNDS_F = 8
# partial rounds indexed by t - 2
N_ROUNDS_P = [56, 57, 56, 60, 60, 63, 64, 63, 60, 66, 60, 65, 70, 60, 64, 68]
MAX_INPUTS = len(N_ROUNDS_P)

_GRAIN_STATE_BITS = 80
_GRAIN_TOP = _GRAIN_STATE_BITS - 1


class _GrainLFSR:
    """Self-shrinking Grain LFSR seeded with the Poseidon instance parameters."""

    def __init__(self, t: int, r_f: int, r_p: int):
        seed: List[int] = []
        seed += _bits(1, 2)            # prime field
        seed += _bits(0, 4)            # x^alpha s-box
        seed += _bits(FIELD_BITS, 12)
        seed += _bits(t, 12)
        seed += _bits(r_f, 10)
        seed += _bits(r_p, 10)
        seed += [1] * 30
        # bit i of the integer is position i of the register
        self._state = sum(bit << i for i, bit in enumerate(seed))
        for _ in range(160):
            self._clock()

    def _clock(self) -> int:
        s = self._state
        new_bit = ((s >> 62) ^ (s >> 51) ^ (s >> 38) ^ (s >> 23) ^ (s >> 13) ^ s) & 1
        self._state = (s >> 1) | (new_bit << _GRAIN_TOP)
        return new_bit

    def next_bit(self) -> int:
        while True:
            selector = self._clock()
            candidate = self._clock()
            if selector:
                return candidate

    def random_bits(self, n: int) -> int:
        value = 0
        for _ in range(n):
            value = (value << 1) | self.next_bit()
        return value

    def field_element(self) -> int:
        """Rejection-sample an element strictly below the modulus."""
        while True:
            value = self.random_bits(FIELD_BITS)
            if value < SNARK_SCALAR_FIELD:
                return value


def _bits(value: int, width: int) -> List[int]:
    return [(value >> (width - 1 - i)) & 1 for i in range(width)]


@lru_cache(maxsize=None)
def poseidon_parameters(t: int) -> Tuple[Tuple[int, ...], Tuple[Tuple[int, ...], ...]]:
    """Return (round_constants, mds_matrix) for state width t."""
    if t < 2 or t > MAX_INPUTS + 1:
        raise ValueError(f"unsupported Poseidon width t={t}")
    p = SNARK_SCALAR_FIELD
    r_p = N_ROUNDS_P[t - 2]
    grain = _GrainLFSR(t, N_ROUNDS_F, r_p)

    constants = tuple(grain.field_element() for _ in range((N_ROUNDS_F + r_p) * t))

    while True:
        candidates = [grain.random_bits(FIELD_BITS) % p for _ in range(2 * t)]
        if len(set(candidates)) != len(candidates):
            continue
        xs, ys = candidates[:t], candidates[t:]
        if any((x + y) % p == 0 for x in xs for y in ys):
            continue
        mds = tuple(
            tuple(pow(x + y, p - 2, p) for y in ys)
            for x in xs
        )
        return constants, mds


def _pow5(a: int) -> int:
    p = SNARK_SCALAR_FIELD
    a2 = a * a % p
    return a2 * a2 % p * a % p


def poseidon(inputs: Sequence[int]) -> int:
    if not inputs:
        raise ValueError("poseidon needs at least one input")
    if len(inputs) > MAX_INPUTS:
        raise ValueError(f"poseidon supports at most {MAX_INPUTS} inputs")
    p = SNARK_SCALAR_FIELD
    t = len(inputs) + 1
    constants, mds = poseidon_parameters(t)
    r_p = N_ROUNDS_P[t - 2]
    half_f = N_ROUNDS_F // 2

    state = [0] + [int(x) % p for x in inputs]
    for r in range(N_ROUNDS_F + r_p):
        offset = r * t
        state = [(s + constants[offset + i]) % p for i, s in enumerate(state)]
        if r < half_f or r >= half_f + r_p:
            state = [_pow5(s) for s in state]
        else:
            state[0] = _pow5(state[0])
        state = [sum(m * s for m, s in zip(row, state)) % p for row in mds]
    return state[0]


def poseidon1(a: int) -> int:
    return poseidon([a])


def poseidon2(a: int, b: int) -> int:
    return poseidon([a, b])


def poseidon3(a: int, b: int, c: int) -> int:
    return poseidon([a, b, c])
