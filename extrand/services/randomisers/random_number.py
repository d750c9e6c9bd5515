from extrand.models.schemas.config import RandomiserType
from extrand.services.randomisers.base import RandomiserStrategy


class RandomNumberRandomiser(RandomiserStrategy):
    """Claims the next row and records a random number between 0 and 1."""

    TYPE = RandomiserType.RANDOM_NUMBER
    LABEL = "Random Number (0-1)"
    DESCRIPTION = "Generate a random floating point number between 0 and 1."

    def choose_allocation(self, context, stratum_key, next_id):
        return next_id, {self.spec.number_column: repr(self.rng.random_number())}
