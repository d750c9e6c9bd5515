from typing import Dict, Type

from extrand.core.errors import UnknownRandomiserError
from extrand.core.rng import SeededRng
from extrand.models.schemas.config import RandomiserType, ValidatedConfig
from extrand.models.schemas.randomization import RandomizationSpec
from extrand.repositories.allocation_repo import AllocationRepository
from extrand.services.randomisers.base import RandomiserStrategy
from extrand.services.randomisers.default import DefaultRandomiser
from extrand.services.randomisers.minimization import BiasedCoinMinimizationRandomiser
from extrand.services.randomisers.random_group import RandomGroupRandomiser
from extrand.services.randomisers.random_integer import RandomIntegerRandomiser
from extrand.services.randomisers.random_number import RandomNumberRandomiser

RANDOMISERS: Dict[RandomiserType, Type[RandomiserStrategy]] = {
    cls.TYPE: cls
    for cls in (
        DefaultRandomiser,
        RandomGroupRandomiser,
        RandomIntegerRandomiser,
        RandomNumberRandomiser,
        BiasedCoinMinimizationRandomiser,
    )
}


def get_randomiser_class(randomiser_type) -> Type[RandomiserStrategy]:
    try:
        return RANDOMISERS[RandomiserType(randomiser_type)]
    except (KeyError, ValueError):
        raise UnknownRandomiserError(f"Unknown randomiser type '{randomiser_type}'")


def make_randomiser(
    spec: RandomizationSpec,
    config: ValidatedConfig,
    allocation_repo: AllocationRepository,
    rng: SeededRng,
) -> RandomiserStrategy:
    randomiser_cls = get_randomiser_class(config.randomiser_type)
    return randomiser_cls(spec, config, allocation_repo, rng)
