import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from typing import Dict, Iterable, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from extrand.core.db import init_db
from extrand.models.orm.allocation import AllocationORM
from extrand.models.schemas.config import RandomiserConfigModel, RandomiserType
from extrand.models.schemas.randomization import RandomizationCreateModel, RandomizationSpec
from extrand.models.schemas.stratum import StratumKey
from extrand.repositories.randomization_repo import RandomizationRepository

# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# RANDOMIZATIONS AND ALLOCATION TABLES
# =============================================================================

OPEN_GROUPS = [{"value": "1", "label": "Treatment"}, {"value": "2", "label": "Control"}]


@pytest.fixture
def make_randomization(db):
    """Create a randomization; open with two groups and no strata by default."""

    def _make(config: Optional[RandomiserConfigModel] = None, **overrides):
        data = {"target_field": "rand_group", "groups": OPEN_GROUPS}
        data.update(overrides)
        repo = RandomizationRepository(db)
        randomization = repo.create_randomization(RandomizationCreateModel(**data))
        if config is not None:
            randomization.randomiser_type = config.randomiser_type.value
            randomization.settings = dict(config.settings)
            randomization.extend_table = config.extend_table
            db.commit()
        return repo.get_randomization(randomization.randomization_id)

    return _make


@pytest.fixture
def add_allocations(db):
    """
    Append rows to a randomization's allocation table. Each row is
    (stratum levels, group level, target_value, target_alt_value).
    """

    def _add(randomization, rows: Iterable[Tuple[Dict[str, str], Optional[str], str, Optional[str]]]):
        ids = []
        for levels, group_level, target_value, target_alt_value in rows:
            key = StratumKey(levels=tuple(levels.items()), group_level=group_level)
            row = AllocationORM(
                randomization_id=randomization.randomization_id,
                status=randomization.status,
                stratum_key=key.serialize(),
                levels=dict(levels),
                group_level=group_level,
                target_value=target_value,
                target_alt_value=target_alt_value,
            )
            db.add(row)
            db.flush()
            ids.append(row.allocation_id)
        db.commit()
        return ids

    return _add


def spec_of(randomization) -> RandomizationSpec:
    return RandomizationSpec.model_validate(randomization)


def minimization_config(**settings) -> RandomiserConfigModel:
    base = {"base_assignment_prob": 0.7, "allocation_ratios-1": 1, "allocation_ratios-2": 1}
    base.update(settings)
    return RandomiserConfigModel(
        randomiser_type=RandomiserType.BIASED_COIN_MINIMIZATION, settings=base
    )
