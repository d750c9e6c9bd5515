from extrand.models.schemas.config import RandomiserType
from extrand.services.config_validator import parse_random_integer_settings
from extrand.services.randomisers.base import RandomiserStrategy


class RandomIntegerRandomiser(RandomiserStrategy):
    """
    Claims the next row and records a random integer between min and max.

    Open: regular group allocation, the integer is the randomization number.
    Blinded: the integer replaces the uploaded randomization number.
    """

    TYPE = RandomiserType.RANDOM_INTEGER
    LABEL = "Random Integer"
    DESCRIPTION = "Generate a random integer between the specified min and max."

    def __init__(self, spec, config, allocation_repo, rng):
        super().__init__(spec, config, allocation_repo, rng)
        self.settings = parse_random_integer_settings(spec, config.settings)

    def choose_allocation(self, context, stratum_key, next_id):
        value = self.rng.random_integer(self.settings.min, self.settings.max)
        return next_id, {self.spec.number_column: str(value)}
