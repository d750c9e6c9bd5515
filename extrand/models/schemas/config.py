import enum
from typing import Any, Dict
from pydantic import BaseModel, Field, ConfigDict


class RandomiserType(str, enum.Enum):
    DEFAULT = "default"
    RANDOM_GROUP = "random_group"
    RANDOM_INTEGER = "random_integer"
    RANDOM_NUMBER = "random_number"
    BIASED_COIN_MINIMIZATION = "biased_coin_minimization"


class RandomiserConfigModel(BaseModel):
    """Strategy configuration as submitted and as persisted per randomization."""

    randomiser_type: RandomiserType = RandomiserType.DEFAULT
    settings: Dict[str, Any] = Field(default_factory=dict)
    extend_table: bool = False


class ValidatedConfig(RandomiserConfigModel):
    """A configuration that passed validation, with settings coerced to their types."""

    model_config = ConfigDict(frozen=True)


class RandomIntegerSettings(BaseModel):
    min: int
    max: int

    model_config = ConfigDict(frozen=True)


class MinimizationSettings(BaseModel):
    base_assignment_prob: float
    logging_field: str = ""
    # factor -> weight, in factor declaration order
    factor_weights: Dict[str, float] = Field(default_factory=dict)
    # group -> ratio, in group declaration order
    allocation_ratios: Dict[str, int]

    model_config = ConfigDict(frozen=True)
