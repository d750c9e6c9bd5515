import logging
from abc import ABC
from typing import Dict, Optional, Tuple

from extrand.core.rng import SeededRng
from extrand.models.schemas.allocation import AllocationOutcome, OutcomeStatus, RecordContext
from extrand.models.schemas.config import RandomiserType, ValidatedConfig
from extrand.models.schemas.randomization import RandomizationSpec
from extrand.models.schemas.stratum import StratumKey
from extrand.repositories.allocation_repo import AllocationRepository, ClaimResult
from extrand.services.table_extender import AllocationTableExtender

logger = logging.getLogger(__name__)


class RandomiserStrategy(ABC):
    """
    Allocates one record to a row of the allocation table.

    ``allocate`` finds the next free row of the record's stratum (extending
    the table first when it is exhausted and extension is enabled), lets the
    strategy choose the row to claim and any value to write into it, then
    claims the row. Overwrite and claim share the caller's transaction.
    """

    TYPE: RandomiserType
    LABEL = "-"
    DESCRIPTION = "-"
    USE_WITH_OPEN = True
    USE_WITH_BLINDED = True
    CAN_EXTEND_TABLE = True
    # Settings that may still change once production records are randomised
    PROD_EDITABLE_SETTINGS: Tuple[str, ...] = ()

    def __init__(
        self,
        spec: RandomizationSpec,
        config: ValidatedConfig,
        allocation_repo: AllocationRepository,
        rng: SeededRng,
    ):
        self.spec = spec
        self.config = config
        self.allocation_repo = allocation_repo
        self.rng = rng

    @property
    def extend_table(self) -> bool:
        return self.CAN_EXTEND_TABLE and self.config.extend_table

    def read_next_allocation_id(self, stratum_key: StratumKey) -> Optional[int]:
        next_id = self.allocation_repo.get_next_free_allocation(
            self.spec.randomization_id, self.spec.status, stratum_key
        )
        if next_id is None and self.extend_table:
            extender = AllocationTableExtender(self.spec, self.allocation_repo)
            next_id = extender.extend(stratum_key)
        return next_id

    def choose_allocation(
        self, context: RecordContext, stratum_key: StratumKey, next_id: int
    ) -> Tuple[Optional[int], Dict[str, str]]:
        """
        The row to claim and the column values to write into it before the
        claim. Returning None for the row means the stratum has no free row.
        """
        return next_id, {}

    def allocate(self, context: RecordContext, stratum_key: StratumKey) -> AllocationOutcome:
        next_id = self.read_next_allocation_id(stratum_key)
        if next_id is None:
            return self.exhausted(stratum_key)

        allocation_id, values = self.choose_allocation(context, stratum_key, next_id)
        if allocation_id is None:
            return self.exhausted(stratum_key)

        for column, value in values.items():
            self.allocation_repo.overwrite_allocation_value(
                self.spec.randomization_id, allocation_id, column, value
            )

        claim = self.allocation_repo.claim_allocation(
            self.spec.randomization_id, allocation_id, context.record_id
        )
        if claim == ClaimResult.RECORD_HOLDS_ROW:
            return AllocationOutcome(
                status=OutcomeStatus.ALREADY_RANDOMISED,
                message=f"Record {context.record_id} has already been randomized.",
            )
        if claim == ClaimResult.ROW_TAKEN:
            logger.warning(
                "Allocation %s of randomization %s was claimed concurrently (record %s)",
                allocation_id,
                self.spec.randomization_id,
                context.record_id,
            )
            return AllocationOutcome(
                status=OutcomeStatus.CLAIM_RACE_LOST,
                allocation_id=allocation_id,
                message="The allocation was taken by another randomization; please retry.",
                retry=True,
            )

        logger.info(
            "%s: record %s allocated allocation id %s %s",
            self.LABEL,
            context.record_id,
            allocation_id,
            values or "",
        )
        return AllocationOutcome(
            status=OutcomeStatus.ALLOCATED,
            allocation_id=allocation_id,
            message="Allocated",
            trace=self.trace(),
        )

    def trace(self):
        return []

    def exhausted(self, stratum_key: StratumKey) -> AllocationOutcome:
        logger.info(
            "Allocation table of randomization %s exhausted for stratum '%s'",
            self.spec.randomization_id,
            stratum_key,
        )
        return AllocationOutcome(
            status=OutcomeStatus.EXHAUSTED,
            message="Randomization allocation table exhausted: no free allocation for this stratum.",
        )
