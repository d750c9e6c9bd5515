import logging
import re
from typing import Optional

from extrand.core.errors import StratificationMismatchError
from extrand.models.schemas.randomization import RandomizationSpec
from extrand.models.schemas.stratum import StratumKey
from extrand.repositories.allocation_repo import AllocationRepository

logger = logging.getLogger(__name__)

TRAILING_DIGITS = re.compile(r"^(.*?)(\d+)$")


class AllocationTableExtender:
    """Adds a row to an exhausted stratum of the allocation table."""

    def __init__(self, spec: RandomizationSpec, allocation_repo: AllocationRepository):
        self.spec = spec
        self.allocation_repo = allocation_repo

    @staticmethod
    def increment(value: Optional[str]) -> str:
        """
        Increment the trailing run of digits, keeping the prefix and padding:
        "R1-7" -> "R1-8", "S009" -> "S010". Values without trailing digits
        give "".
        """
        match = TRAILING_DIGITS.match(value or "")
        if not match:
            return ""
        prefix, digits = match.groups()
        return prefix + str(int(digits) + 1).zfill(len(digits))

    def extend(self, stratum_key: StratumKey) -> Optional[int]:
        """
        Insert a new row for the stratum after its highest-numbered row.

        Returns the new allocation id, or None when the stratum has never had
        a row to continue from.
        """
        declared = self.spec.factor_names
        submitted = [factor for factor, _ in stratum_key.levels]
        if submitted != declared or (stratum_key.group_level is not None) != self.spec.is_grouped:
            raise StratificationMismatchError(
                f"Cannot extend allocation table: stratification {submitted} does not "
                f"match criteria fields {declared}"
            )

        last = self.allocation_repo.get_last_allocation_in_stratum(
            self.spec.randomization_id, self.spec.status, stratum_key
        )
        if last is None:
            logger.warning(
                "No allocation rows in stratum '%s' of randomization %s to extend from",
                stratum_key,
                self.spec.randomization_id,
            )
            return None

        number_column = self.spec.number_column
        group_column = self.spec.group_column
        values = {
            number_column: self.increment(getattr(last, number_column)),
            group_column: getattr(last, group_column),
        }

        allocation_id = self.allocation_repo.insert_allocation_row(
            self.spec.randomization_id,
            self.spec.status,
            stratum_key,
            target_value=values["target_value"],
            target_alt_value=values["target_alt_value"],
        )
        logger.info(
            "Extended allocation table of randomization %s after %s with allocation %s",
            self.spec.randomization_id,
            last.to_dict(),
            allocation_id,
        )
        return allocation_id
