import math
import random
from typing import Optional


class SeededRng:
    """
    Uniform draws in [0, 1) for the randomisers.

    Without a seed every draw comes from a fresh system-seeded generator.
    With a seed, draw n is fully determined by (seed, n): the cursor is
    advanced by one before each draw and the caller persists it afterwards,
    so any allocation can be replayed from the stored seed and cursor.
    """

    def __init__(self, seed: Optional[int] = None, cursor: int = 0):
        self.seed = seed
        self.cursor = cursor
        self.start_cursor = cursor
        self._rng = random.Random()

    @property
    def is_seeded(self) -> bool:
        return self.seed is not None

    def draw(self) -> float:
        if not self.is_seeded:
            return self._rng.random()

        self.cursor += 1
        return self.draw_at(self.seed, self.cursor)

    @staticmethod
    def draw_at(seed: int, cursor: int) -> float:
        """The value a seeded generator yields at a given cursor position."""
        return random.Random(f"{seed}:{cursor}").random()

    def random_number(self, low: float = 0, high: float = 1) -> float:
        if low > high:
            low, high = high, low
        return low + (high - low) * self.draw()

    def random_integer(self, low: int, high: int) -> int:
        """Uniform integer in the closed range [low, high]."""
        if low > high:
            low, high = high, low
        value = low + math.floor((high - low + 1) * self.draw())
        return min(value, high)

    def random_index(self, size: int) -> int:
        """Uniform index into a sequence of the given size."""
        if size <= 0:
            raise ValueError("Cannot pick from an empty sequence.")
        return min(math.floor(size * self.draw()), size - 1)
