from __future__ import annotations

import hashlib
from typing import Tuple, Union

import numpy as np


SeedLike = Union[int, str]


def derive_seed(base_seed: int, *components: SeedLike, modulo: int = 2**32 - 1) -> int:
    """Derive a deterministic seed from a base seed and labelled components.

    Every world run, genome evaluation and search generation gets its own
    independent stream, so no generator state is shared across workers.
    """
    h = hashlib.blake2b(digest_size=8)
    for part in (int(base_seed), *components):
        h.update(str(part).encode("utf-8"))
        h.update(b"|")
    return int.from_bytes(h.digest(), "big", signed=False) % modulo


def seed_stream(base_seed: int, label: str, count: int) -> Tuple[int, ...]:
    return tuple(derive_seed(base_seed, label, i) for i in range(max(1, int(count))))


def make_rng(seed: int) -> np.random.Generator:
    return np.random.default_rng(int(seed))


def chance(rng: np.random.Generator, probability: float) -> bool:
    """Bernoulli draw; probabilities outside [0, 1] saturate."""
    p = float(probability)
    if p <= 0.0:
        return False
    if p >= 1.0:
        return True
    return bool(rng.random() < p)
