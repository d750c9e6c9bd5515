import itertools
from typing import Dict, List, Optional

from extrand.core.errors import StratificationMismatchError
from extrand.models.schemas.randomization import RandomizationSpec
from extrand.models.schemas.stratum import StratumKey


class StratumCatalog:
    """
    Every stratification cell of a randomization, in a stable order.

    Cells are the cross-product of the factors' levels (and the
    group-membership levels when grouped), varying the last factor fastest,
    so the index of a cell is the same on every call for the same spec.
    """

    def __init__(self, spec: RandomizationSpec):
        self.spec = spec
        self._combinations: Optional[List[StratumKey]] = None

    def combinations(self) -> List[StratumKey]:
        if self._combinations is None:
            axes = [factor.levels for factor in self.spec.factors]
            if self.spec.is_grouped:
                axes.append(list(self.spec.group_levels))

            names = self.spec.factor_names
            keys = []
            for combo in itertools.product(*axes):
                factor_part = tuple(zip(names, combo[: len(names)]))
                group_level = combo[len(names)] if self.spec.is_grouped else None
                keys.append(StratumKey(levels=factor_part, group_level=group_level))
            self._combinations = keys
        return self._combinations

    def index_of(self, key: StratumKey) -> Optional[int]:
        """Display index of a stratum; None when unstratified or not a known cell."""
        if not self.spec.is_stratified:
            return None
        try:
            return self.combinations().index(key)
        except ValueError:
            return None

    def make_key(self, fields: Dict[str, str], group_level: Optional[str] = None) -> StratumKey:
        """
        Build the canonical key for a record's stratification values.

        Raises StratificationMismatchError unless ``fields`` names exactly the
        declared factors with recognised levels, and a group level is given
        if and only if the randomization is grouped.
        """
        errors = []
        declared = self.spec.factor_names

        missing = [name for name in declared if name not in fields]
        extra = sorted(set(fields) - set(declared))
        if missing:
            errors.append(f"missing stratification field(s): {', '.join(missing)}")
        if extra:
            errors.append(f"unexpected stratification field(s): {', '.join(extra)}")

        for factor in self.spec.factors:
            value = fields.get(factor.field_name)
            if value is not None and value not in factor.levels:
                errors.append(f"'{value}' is not a level of '{factor.field_name}'")

        if self.spec.is_grouped:
            if group_level is None or group_level == "":
                errors.append("missing group membership")
            elif group_level not in self.spec.group_levels:
                errors.append(f"unknown group membership '{group_level}'")
        elif group_level is not None:
            errors.append("randomization is not grouped by membership")

        if errors:
            raise StratificationMismatchError("Stratification mismatch: " + "; ".join(errors))

        return StratumKey(
            levels=tuple((name, str(fields[name])) for name in declared),
            group_level=group_level if self.spec.is_grouped else None,
        )
