import logging

from extrand.models.schemas.config import RandomiserType
from extrand.services.randomisers.base import RandomiserStrategy

logger = logging.getLogger(__name__)


class RandomGroupRandomiser(RandomiserStrategy):
    """
    Picks a free row of the stratum at random instead of the next one, so
    the allocation cannot be predicted from table position.
    """

    TYPE = RandomiserType.RANDOM_GROUP
    LABEL = "Random Group"
    DESCRIPTION = "Allocates an available entry from the appropriate stratum at random rather than sequentially."
    USE_WITH_BLINDED = False
    CAN_EXTEND_TABLE = False

    def choose_allocation(self, context, stratum_key, next_id):
        next_row = self.allocation_repo.get_allocation(next_id)
        remaining = self.allocation_repo.get_free_allocations_in_stratum(
            self.spec.randomization_id, self.spec.status, next_row.stratum_key
        )
        if not remaining:
            return None, {}

        random_id = remaining[self.rng.random_index(len(remaining))]
        logger.info("Randomly selected available allocation id is %s", random_id)
        return random_id, {}
