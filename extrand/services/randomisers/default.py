from extrand.models.schemas.config import RandomiserType
from extrand.services.randomisers.base import RandomiserStrategy


class DefaultRandomiser(RandomiserStrategy):
    """Claims the next free row of the stratum in table order."""

    TYPE = RandomiserType.DEFAULT
    LABEL = "Default"
    DESCRIPTION = "Allocation follows the order of the allocation table."
