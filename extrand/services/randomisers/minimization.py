"""
Biased coin minimisation, after

    Han, B., Enas, N. H., & McEntegart, D. (2009). Randomization by
    minimization for unbalanced treatment allocation. Statistics in
    Medicine, 28(27), 3329-3346. https://doi.org/10.1002/sim.3710

For each candidate group the engine computes the imbalance the allocation
would leave across the record's stratification factors, prefers the group
with the least imbalance, then assigns the preferred group with a high (but
not certain) probability scaled by the allocation ratios.
"""

import itertools
import logging
from collections import Counter
from typing import Dict, Iterable, List, Tuple

from pydantic import BaseModel, Field

from extrand.core.rng import SeededRng
from extrand.models.schemas.config import MinimizationSettings, RandomiserType
from extrand.models.schemas.stratum import GROUP_BY_FACTOR, StratumKey
from extrand.services.config_validator import parse_minimization_settings
from extrand.services.randomisers.base import RandomiserStrategy

logger = logging.getLogger(__name__)

OVERALL_FACTOR = "OVERALL"
OVERALL_LEVEL = "1"


class RandomisationState:
    """Counts of prior allocations by (factor, level, group), plus OVERALL per group."""

    def __init__(self):
        self._counts: Counter = Counter()

    @classmethod
    def from_allocations(cls, allocations: Iterable, group_column: str) -> "RandomisationState":
        """Tally claimed allocation rows, reading each row's group from ``group_column``."""
        state = cls()
        for row in allocations:
            group = getattr(row, group_column)
            if group is None:
                continue
            levels = dict(row.levels or {})
            if row.group_level is not None:
                levels[GROUP_BY_FACTOR] = row.group_level
            state.increment(levels, group)
        return state

    def count(self, factor: str, level: str, group: str) -> int:
        return self._counts[(factor, str(level), str(group))]

    def increment(self, stratification: Dict[str, str], group: str) -> None:
        for factor, level in stratification.items():
            if factor != OVERALL_FACTOR:
                self._counts[(factor, str(level), str(group))] += 1
        self._counts[(OVERALL_FACTOR, OVERALL_LEVEL, str(group))] += 1

    def as_dict(self) -> Dict[str, int]:
        return {f"{f}={l}:{g}": n for (f, l, g), n in sorted(self._counts.items())}


class MinimizationResult(BaseModel):
    stratification: Dict[str, str]
    imbalances: Dict[str, float]
    minimum_groups: List[str]
    preferred: str
    probabilities: Dict[str, float]
    draw: float
    group: str
    trace: List[str] = Field(default_factory=list)


class MinimizationEngine:
    def __init__(self, settings: MinimizationSettings, rng: SeededRng):
        self.settings = settings
        self.rng = rng
        self.base_prob = settings.base_assignment_prob
        # Groups with a zero ratio only hold places in the table
        self.ratios: Dict[str, int] = {
            group: ratio for group, ratio in settings.allocation_ratios.items() if ratio > 0
        }
        self._trace: List[str] = []

    def log(self, message: str) -> None:
        self._trace.append(message)
        logger.debug(message)

    @staticmethod
    def stratification_for(stratum_key: StratumKey) -> Dict[str, str]:
        return stratum_key.factor_levels() or {OVERALL_FACTOR: OVERALL_LEVEL}

    def factor_weight(self, factor: str) -> float:
        if factor == OVERALL_FACTOR:
            return 1.0
        return self.settings.factor_weights[factor]

    def adjusted_counts(
        self, state: RandomisationState, factor: str, level: str, proposed: str
    ) -> Dict[str, float]:
        """Counts assuming allocation to ``proposed``, divided by each group's ratio."""
        adjusted = {}
        parts = []
        for group, ratio in self.ratios.items():
            count = state.count(factor, level, group)
            bump = 1 if group == proposed else 0
            adjusted[group] = (count + bump) / ratio
            parts.append(f"{group} current={count}, adjusted=({count}+{bump})/{ratio}={adjusted[group]}")
        self.log(f"-Factor {factor}={level} group counts: " + "; ".join(parts))
        return adjusted

    @staticmethod
    def factor_imbalance(adjusted: Dict[str, float]) -> float:
        """Mean pairwise absolute difference, normalised by the total adjusted count."""
        values = list(adjusted.values())
        if len(values) < 2:
            return 0.0
        sum_diffs = sum(abs(a - b) for a, b in itertools.combinations(values, 2))
        return sum_diffs / ((len(values) - 1) * sum(values))

    def marginal_imbalance(
        self, stratification: Dict[str, str], state: RandomisationState
    ) -> Dict[str, float]:
        imbalances = {}
        for proposed in self.ratios:
            weighted = []
            for factor, level in stratification.items():
                weight = self.factor_weight(factor)
                imbalance = self.factor_imbalance(
                    self.adjusted_counts(state, factor, level, proposed)
                )
                weighted.append(imbalance * weight)
                self.log(
                    f"-Imbalance for factor {factor}={level} (weight {weight}), "
                    f"group {proposed} = {imbalance}, weighted = {imbalance * weight}"
                )
            imbalances[proposed] = sum(weighted)
            self.log(
                f"Total marginal imbalance for group {proposed} = "
                + " + ".join(str(w) for w in weighted)
                + f" = {imbalances[proposed]}"
            )
        return imbalances

    def preferred_group(self, imbalances: Dict[str, float]) -> Tuple[str, List[str]]:
        """Group with least imbalance; ties broken at random in proportion to ratio."""
        lowest = min(imbalances.values())
        minimum_groups = [g for g, score in imbalances.items() if score == lowest]
        self.log("Group(s) with minimum imbalance: " + " ".join(minimum_groups))

        if len(minimum_groups) == 1:
            return minimum_groups[0], minimum_groups

        choices = [g for g in minimum_groups for _ in range(self.ratios[g])]
        preferred = choices[self.rng.random_index(len(choices))]
        self.log(f"Preferred group {preferred} selected from {','.join(choices)}")
        return preferred, minimum_groups

    def lowest_ratio_group(self) -> str:
        return min(self.ratios, key=lambda g: self.ratios[g])

    def sum_ratios_except(self, excluded: str) -> int:
        return sum(r for g, r in self.ratios.items() if g != excluded)

    def high_probability(self, group: str) -> float:
        """Probability of assigning the preferred group: the base probability
        for the lowest-ratio group, higher for groups with larger ratios."""
        sum_not_lowest = self.sum_ratios_except(self.lowest_ratio_group())
        return 1 - (self.sum_ratios_except(group) / sum_not_lowest) * (1 - self.base_prob)

    def low_probability(self, group: str) -> float:
        sum_not_lowest = self.sum_ratios_except(self.lowest_ratio_group())
        return (self.ratios[group] / sum_not_lowest) * (1 - self.base_prob)

    def assignment_probabilities(self, preferred: str) -> Dict[str, float]:
        if len(self.ratios) == 1:
            return {preferred: 1.0}
        return {
            group: self.high_probability(group) if group == preferred else self.low_probability(group)
            for group in self.ratios
        }

    def select(self, probabilities: Dict[str, float]) -> Tuple[str, float]:
        draw = self.rng.draw()
        cumulative = 0.0
        selected = None
        for group, probability in probabilities.items():
            cumulative += probability
            if cumulative > draw:
                selected = group
                break
        if selected is None:
            # Rounding left the cumulative mass a hair under the draw
            selected = list(probabilities)[-1]
        self.log(f"Random number={draw}, group {selected} selected")
        return selected, draw

    def choose(
        self, stratum_key: StratumKey, state: RandomisationState, record_id: str | None = None
    ) -> MinimizationResult:
        self._trace = []
        if record_id is not None:
            self.log(f"***** Biased coin minimization: record {record_id} *****")
        if not self.ratios:
            raise ValueError("No allocation group has a ratio greater than zero.")

        stratification = self.stratification_for(stratum_key)
        self.log(
            "Stratification: "
            + ", ".join(f"{factor}={level}" for factor, level in stratification.items())
        )

        imbalances = self.marginal_imbalance(stratification, state)
        preferred, minimum_groups = self.preferred_group(imbalances)

        probabilities = self.assignment_probabilities(preferred)
        self.log(
            "Group allocation probabilities: "
            + " ".join(f"{g}={p}" for g, p in probabilities.items())
        )
        group, draw = self.select(probabilities)

        return MinimizationResult(
            stratification=stratification,
            imbalances=imbalances,
            minimum_groups=minimum_groups,
            preferred=preferred,
            probabilities=probabilities,
            draw=draw,
            group=group,
            trace=list(self._trace),
        )


class BiasedCoinMinimizationRandomiser(RandomiserStrategy):
    TYPE = RandomiserType.BIASED_COIN_MINIMIZATION
    LABEL = "Biased coin minimization"
    DESCRIPTION = (
        "Dynamic randomization via the biased coin minimization algorithm of "
        "Han, Enas & McEntegart (2009)."
    )
    PROD_EDITABLE_SETTINGS = ("logging_field",)

    def __init__(self, spec, config, allocation_repo, rng):
        super().__init__(spec, config, allocation_repo, rng)
        self.settings = parse_minimization_settings(spec, config.settings)
        self.engine = MinimizationEngine(self.settings, rng)
        self.result = None

    @property
    def logging_field(self) -> str:
        return self.settings.logging_field

    def choose_allocation(self, context, stratum_key, next_id):
        # Counts are rebuilt from the table on every call so that claims made
        # by concurrent randomisations are seen.
        claimed = self.allocation_repo.get_claimed_allocations(
            self.spec.randomization_id, self.spec.status
        )
        state = RandomisationState.from_allocations(claimed, self.spec.group_column)

        self.result = self.engine.choose(stratum_key, state, record_id=context.record_id)
        return next_id, {self.spec.group_column: self.result.group}

    def trace(self):
        return self.result.trace if self.result else []
