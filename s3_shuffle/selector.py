from __future__ import annotations

import random
from typing import TYPE_CHECKING

from .errors import EmptySetError

if TYPE_CHECKING:
    from collections.abc import Sequence


class KeySelector:
    """Uniform random choice over a key listing.

    Every call is an independent draw, so the same key can come up twice in
    a row.
    """

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def pick_random(self, keys: Sequence[str]) -> str:
        if not keys:
            msg = "no objects to choose from"
            raise EmptySetError(msg)
        return self._rng.choice(keys)
