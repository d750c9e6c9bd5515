# repositories/allocation_repo.py
import enum
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from extrand.models.orm.allocation import AllocationORM
from extrand.models.orm.randomization import RandomizationStatus
from extrand.models.schemas.stratum import StratumKey

logger = logging.getLogger(__name__)

VALUE_COLUMNS = ("target_value", "target_alt_value")


class ClaimResult(enum.Enum):
    CLAIMED = "CLAIMED"
    # Another request claimed the row first
    ROW_TAKEN = "ROW_TAKEN"
    # The record already holds another row of the randomization
    RECORD_HOLDS_ROW = "RECORD_HOLDS_ROW"


class AllocationRepository:
    """
    Access to the pre-generated allocation table.

    Methods here never commit: the randomisation service owns the
    transaction so that an overwrite and the claim that follows it land
    together or not at all.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_allocation(self, allocation_id: int) -> Optional[AllocationORM]:
        return self.db.get(AllocationORM, allocation_id, populate_existing=True)

    def get_allocation_for_record(
        self, randomization_id: str, record_id: str
    ) -> Optional[AllocationORM]:
        """The row already claimed by a record, if any."""
        stmt = select(AllocationORM).where(
            AllocationORM.randomization_id == randomization_id,
            AllocationORM.is_used_by == record_id,
        )
        return self.db.scalars(stmt).one_or_none()

    def get_next_free_allocation(
        self, randomization_id: str, status: RandomizationStatus, stratum_key: StratumKey
    ) -> Optional[int]:
        """Id of the first unclaimed row in table order for the stratum, or None when exhausted."""
        stmt = (
            select(AllocationORM.allocation_id)
            .where(
                AllocationORM.randomization_id == randomization_id,
                AllocationORM.status == status,
                AllocationORM.stratum_key == stratum_key.serialize(),
                AllocationORM.is_used_by.is_(None),
            )
            .order_by(AllocationORM.allocation_id)
            .limit(1)
        )
        return self.db.scalars(stmt).first()

    def get_free_allocations_in_stratum(
        self, randomization_id: str, status: RandomizationStatus, stratum_key: str
    ) -> list[int]:
        stmt = (
            select(AllocationORM.allocation_id)
            .where(
                AllocationORM.randomization_id == randomization_id,
                AllocationORM.status == status,
                AllocationORM.stratum_key == stratum_key,
                AllocationORM.is_used_by.is_(None),
            )
            .order_by(AllocationORM.allocation_id)
        )
        return list(self.db.scalars(stmt).all())

    def get_last_allocation_in_stratum(
        self, randomization_id: str, status: RandomizationStatus, stratum_key: StratumKey
    ) -> Optional[AllocationORM]:
        """The highest-numbered row, claimed or not, for the stratum."""
        stmt = (
            select(AllocationORM)
            .where(
                AllocationORM.randomization_id == randomization_id,
                AllocationORM.status == status,
                AllocationORM.stratum_key == stratum_key.serialize(),
            )
            .order_by(AllocationORM.allocation_id.desc())
            .limit(1)
        )
        return self.db.scalars(stmt).first()

    def claim_allocation(self, randomization_id: str, allocation_id: int, record_id: str) -> ClaimResult:
        """
        Mark a row as used by a record.

        The update is conditional on the row still being free, so of two
        concurrent claims on the same row exactly one gets CLAIMED. A claim
        by a record that already holds a row of the randomization gives
        RECORD_HOLDS_ROW.
        """
        stmt = (
            update(AllocationORM)
            .where(
                AllocationORM.randomization_id == randomization_id,
                AllocationORM.allocation_id == allocation_id,
                AllocationORM.is_used_by.is_(None),
            )
            .values(is_used_by=record_id, allocated_at=datetime.utcnow())
        )
        try:
            result = self.db.execute(stmt)
        except IntegrityError:
            # The record already holds another row of this randomization
            self.db.rollback()
            logger.warning(
                "Record %s already holds an allocation in randomization %s",
                record_id,
                randomization_id,
            )
            return ClaimResult.RECORD_HOLDS_ROW
        return ClaimResult.CLAIMED if result.rowcount == 1 else ClaimResult.ROW_TAKEN

    def unclaim_allocation(self, randomization_id: str, allocation_id: int) -> None:
        stmt = (
            update(AllocationORM)
            .where(
                AllocationORM.randomization_id == randomization_id,
                AllocationORM.allocation_id == allocation_id,
            )
            .values(is_used_by=None, allocated_at=None)
        )
        self.db.execute(stmt)

    def overwrite_allocation_value(
        self, randomization_id: str, allocation_id: int, column: str, value: str
    ) -> None:
        if column not in VALUE_COLUMNS:
            raise ValueError(f"Allocation column '{column}' cannot be overwritten.")
        stmt = (
            update(AllocationORM)
            .where(
                AllocationORM.randomization_id == randomization_id,
                AllocationORM.allocation_id == allocation_id,
            )
            .values({column: value})
        )
        self.db.execute(stmt)

    def insert_allocation_row(
        self,
        randomization_id: str,
        status: RandomizationStatus,
        stratum_key: StratumKey,
        target_value: Optional[str],
        target_alt_value: Optional[str] = None,
    ) -> int:
        db_allocation = AllocationORM(
            randomization_id=randomization_id,
            status=status,
            stratum_key=stratum_key.serialize(),
            levels=stratum_key.as_dict(),
            group_level=stratum_key.group_level,
            target_value=target_value,
            target_alt_value=target_alt_value,
        )
        self.db.add(db_allocation)
        self.db.flush()
        return db_allocation.allocation_id

    def get_claimed_allocations(
        self, randomization_id: str, status: RandomizationStatus
    ) -> list[AllocationORM]:
        stmt = (
            select(AllocationORM)
            .where(
                AllocationORM.randomization_id == randomization_id,
                AllocationORM.status == status,
                AllocationORM.is_used_by.is_not(None),
            )
            .order_by(AllocationORM.allocation_id)
        )
        return list(self.db.scalars(stmt).all())

    def count_claimed_allocations(
        self,
        randomization_id: str,
        status: RandomizationStatus,
        stratum_key: Optional[StratumKey] = None,
        group_filter: Optional[str] = None,
        group_column: str = "target_value",
    ) -> int:
        """
        Number of claimed rows, optionally restricted to one stratum and to
        rows whose group column equals ``group_filter``.
        """
        if group_column not in VALUE_COLUMNS:
            raise ValueError(f"Unknown allocation column '{group_column}'.")
        stmt = select(func.count(AllocationORM.allocation_id)).where(
            AllocationORM.randomization_id == randomization_id,
            AllocationORM.status == status,
            AllocationORM.is_used_by.is_not(None),
        )
        if stratum_key is not None:
            stmt = stmt.where(AllocationORM.stratum_key == stratum_key.serialize())
        if group_filter is not None:
            stmt = stmt.where(getattr(AllocationORM, group_column) == group_filter)
        return self.db.scalar(stmt)

    def count_claimed_by_stratum(
        self, randomization_id: str, status: RandomizationStatus
    ) -> Dict[str, int]:
        """Serialized stratum key -> number of claimed rows, in one query."""
        stmt = (
            select(AllocationORM.stratum_key, func.count(AllocationORM.allocation_id))
            .where(
                AllocationORM.randomization_id == randomization_id,
                AllocationORM.status == status,
                AllocationORM.is_used_by.is_not(None),
            )
            .group_by(AllocationORM.stratum_key)
        )
        return {stratum_key: count for stratum_key, count in self.db.execute(stmt)}

    def has_production_claims(self, randomization_id: str) -> bool:
        stmt = select(func.count(AllocationORM.allocation_id)).where(
            AllocationORM.randomization_id == randomization_id,
            AllocationORM.status == RandomizationStatus.PRODUCTION,
            AllocationORM.is_used_by.is_not(None),
        )
        return self.db.scalar(stmt) > 0
