import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from extrand.models.orm.allocation import AllocationORM  # noqa: F401  (mapper registry)
from extrand.models.orm.randomization import (
    RandomizationORM,
    StratificationFactorORM,
    TreatmentGroupORM,
)
from extrand.models.schemas.config import RandomiserConfigModel, ValidatedConfig
from extrand.models.schemas.randomization import RandomizationCreateModel


class RandomizationRepository:
    """Typed store of randomization specs, their strategy config and seed cursor."""

    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_randomization(self, randomization_data: RandomizationCreateModel) -> RandomizationORM:
        """
        Creates a randomization together with its stratification factors and
        treatment groups. New randomizations start on the default strategy.
        """
        randomization_id = str(uuid.uuid4())

        randomization_dict = randomization_data.model_dump(exclude={"factors", "groups"})
        randomization_dict["randomization_id"] = randomization_id
        randomization_dict["seed_sequence"] = 0
        randomization_dict["settings"] = {}

        try:
            db_randomization = RandomizationORM(**randomization_dict)
            self.db.add(db_randomization)

            for position, factor in enumerate(randomization_data.factors):
                self.db.add(
                    StratificationFactorORM(
                        randomization_id=randomization_id,
                        position=position,
                        field_name=factor.field_name,
                        levels=list(factor.levels),
                    )
                )

            for position, group in enumerate(randomization_data.groups):
                self.db.add(
                    TreatmentGroupORM(
                        randomization_id=randomization_id,
                        position=position,
                        value=group.value,
                        label=group.label,
                    )
                )

            self.db.commit()

        except IntegrityError as e:
            self.db.rollback()
            raise ValueError(f"Database integrity error creating randomization: {e}")

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(
                f"A database error occurred during randomization creation: {e}"
            )

        return self.get_randomization(randomization_id)

    def get_randomization(self, randomization_id: str) -> Optional[RandomizationORM]:
        """
        Fetches a randomization and eagerly loads its factors and groups.
        """
        stmt = (
            select(RandomizationORM)
            .where(RandomizationORM.randomization_id == randomization_id)
            .options(
                selectinload(RandomizationORM.factors),
                selectinload(RandomizationORM.groups),
            )
        )
        return self.db.scalars(stmt).one_or_none()

    def get_config(self, randomization: RandomizationORM) -> RandomiserConfigModel:
        return RandomiserConfigModel(
            randomiser_type=randomization.randomiser_type,
            settings=dict(randomization.settings or {}),
            extend_table=randomization.extend_table,
        )

    def save_config(self, randomization_id: str, config: ValidatedConfig) -> None:
        stmt = (
            update(RandomizationORM)
            .where(RandomizationORM.randomization_id == randomization_id)
            .values(
                randomiser_type=config.randomiser_type.value,
                settings=dict(config.settings),
                extend_table=config.extend_table,
            )
        )
        self.db.execute(stmt)

    def get_seed_sequence_for_update(self, randomization_id: str) -> int:
        """
        Current seed cursor read from the database, not the identity map.
        The row stays locked until the caller's transaction ends on backends
        that support FOR UPDATE.
        """
        stmt = (
            select(RandomizationORM.seed_sequence)
            .where(RandomizationORM.randomization_id == randomization_id)
            .with_for_update()
        )
        return self.db.scalar(stmt)

    def advance_seed_sequence(self, randomization_id: str, expected: int, seed_sequence: int) -> bool:
        """
        Move the seed cursor from ``expected`` to ``seed_sequence``. Returns
        False when another request moved it first, in which case the draws
        made from ``expected`` must not be used.
        """
        stmt = (
            update(RandomizationORM)
            .where(
                RandomizationORM.randomization_id == randomization_id,
                RandomizationORM.seed_sequence == expected,
            )
            .values(seed_sequence=seed_sequence)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1
