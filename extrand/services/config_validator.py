"""
Validation of randomiser strategy settings.

Every validator is a pure function of the randomization spec and the
submitted settings. It returns the settings coerced to their types along
with every problem found, so they can all be reported in one round trip;
validate_config raises ConfigInvalidError when that list is not empty.
"""

import json
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from extrand.core.errors import ConfigInvalidError
from extrand.models.schemas.config import (
    MinimizationSettings,
    RandomIntegerSettings,
    RandomiserConfigModel,
    RandomiserType,
    ValidatedConfig,
)
from extrand.models.schemas.randomization import RandomizationSpec
from extrand.models.schemas.stratum import GROUP_BY_FACTOR

WEIGHT_SUM_TOLERANCE = 1e-3
FIELD_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

SettingsValidator = Callable[[RandomizationSpec, Dict[str, Any]], Tuple[Dict[str, Any], List[str]]]


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    return None


def minimization_factors(spec: RandomizationSpec) -> List[str]:
    """Factors weighted by minimisation: declared fields, then group membership."""
    factors = list(spec.factor_names)
    if spec.is_grouped:
        factors.append(GROUP_BY_FACTOR)
    return factors


def validate_no_settings(spec: RandomizationSpec, settings: Dict[str, Any]):
    errors = [f"Unexpected setting: '{key}' = '{value}'" for key, value in settings.items()]
    return {}, errors


def validate_random_integer_settings(spec: RandomizationSpec, settings: Dict[str, Any]):
    errors = []
    coerced: Dict[str, Any] = {}

    for key in ("min", "max"):
        raw = settings.get(key)
        if raw is None or str(raw).strip() == "":
            errors.append(f"Missing {key}")
            continue
        value = _as_int(raw)
        if value is None:
            errors.append(f'Non-integer {key} "{raw}"')
        else:
            coerced[key] = value

    for key in settings:
        if key not in ("min", "max"):
            errors.append(f"Unexpected setting: '{key}' = '{settings[key]}'")

    if not errors and coerced["min"] >= coerced["max"]:
        errors.append(
            f"Invalid range: min ({coerced['min']}) must be less than max ({coerced['max']})"
        )
    return coerced, errors


def _parse_blinded_ratios(raw: Any, errors: List[str]) -> Dict[str, int]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            errors.append(
                'Invalid allocation ratios: expected a JSON array such as '
                '[{"group":"A","ratio":1},{"group":"B","ratio":1}]'
            )
            return {}

    if not isinstance(raw, list) or not raw:
        errors.append("Invalid allocation ratios: a non-empty array of {group, ratio} expected")
        return {}

    ratios: Dict[str, int] = {}
    for item in raw:
        if not isinstance(item, dict) or "group" not in item or "ratio" not in item:
            errors.append(f"Invalid allocation ratio entry: {item!r}")
            continue
        group = str(item["group"]).strip()
        ratio = _as_int(item["ratio"])
        if not group:
            errors.append(f"Invalid allocation ratio entry: {item!r}")
        elif group in ratios:
            errors.append(f"Duplicate allocation group '{group}'")
        elif ratio is None or ratio < 0:
            errors.append(
                f"Invalid ratio value for allocation group '{group}': '{item['ratio']}' "
                "(integer greater than or equal to zero expected)"
            )
        else:
            ratios[group] = ratio
    return ratios


def validate_minimization_settings(spec: RandomizationSpec, settings: Dict[str, Any]):
    errors: List[str] = []
    coerced: Dict[str, Any] = {}

    factors = minimization_factors(spec)
    weights: Dict[str, Optional[float]] = {factor: None for factor in factors}
    if len(factors) == 1:
        weights[factors[0]] = 1.0

    if spec.is_blinded:
        ratios: Dict[str, Optional[int]] = {}
    else:
        ratios = {group.value: None for group in spec.groups}

    if "base_assignment_prob" not in settings:
        errors.append("Missing base assignment probability")

    for key, raw in settings.items():
        value = "" if raw is None else (raw.strip() if isinstance(raw, str) else raw)

        if key == "base_assignment_prob":
            prob = _as_float(value)
            if value == "":
                errors.append("Missing base assignment probability")
            elif prob is None or not 0 <= prob <= 1:
                errors.append(
                    f"Invalid base assignment probability: '{value}' "
                    "(floating point number from 0 to 1 expected)"
                )
            else:
                coerced[key] = prob

        elif key == "logging_field":
            if value == "" or (isinstance(value, str) and FIELD_NAME.match(value)):
                coerced[key] = value
            else:
                errors.append(f"Invalid logging field: '{value}'")

        elif key.startswith("factor_weights-"):
            factor = key.split("-", 1)[1]
            weight = _as_float(value)
            if factor not in weights:
                errors.append(f"Unrecognised stratification factor '{factor}'")
            elif weight is None or not 0 < weight <= 1:
                errors.append(
                    f"Invalid weight for factor '{factor}': '{value}' "
                    "(non-zero floating point number less than or equal to 1 expected)"
                )
            else:
                weights[factor] = coerced[key] = weight

        elif key == "allocation_ratios" and spec.is_blinded:
            parsed = _parse_blinded_ratios(value, errors)
            ratios.update(parsed)
            coerced[key] = [{"group": g, "ratio": r} for g, r in parsed.items()]

        elif key.startswith("allocation_ratios-") and not spec.is_blinded:
            group = key.split("-", 1)[1]
            ratio = _as_int(value)
            if group not in ratios:
                errors.append(f"Unrecognised allocation group '{group}'")
            elif ratio is None or ratio < 0:
                errors.append(
                    f"Invalid ratio value for allocation group '{group}': '{value}' "
                    "(integer greater than or equal to zero expected)"
                )
            else:
                ratios[group] = coerced[key] = ratio

        else:
            errors.append(f"Unexpected setting: '{key}' = '{value}'")

    if len(factors) > 1:
        total = 0.0
        for factor, weight in weights.items():
            if weight is None:
                errors.append(f"Missing weight for factor '{factor}'")
            else:
                total += weight
        if abs(total - 1) > WEIGHT_SUM_TOLERANCE:
            errors.append(f"Factor weights do not sum to 1 ({round(total, 6)})")

    if spec.is_blinded and "allocation_ratios" not in settings:
        errors.append("Missing allocation ratios")

    ratio_sum = 0
    for group, ratio in ratios.items():
        if ratio is None:
            errors.append(f"Missing allocation ratio for group '{group}'")
        else:
            ratio_sum += ratio
    if ratio_sum <= 0:
        errors.append("At least one group must have an allocation ratio greater than zero")

    return coerced, errors


SETTINGS_VALIDATORS: Dict[RandomiserType, SettingsValidator] = {
    RandomiserType.DEFAULT: validate_no_settings,
    RandomiserType.RANDOM_GROUP: validate_no_settings,
    RandomiserType.RANDOM_NUMBER: validate_no_settings,
    RandomiserType.RANDOM_INTEGER: validate_random_integer_settings,
    RandomiserType.BIASED_COIN_MINIMIZATION: validate_minimization_settings,
}


def validate_config(
    spec: RandomizationSpec, config: RandomiserConfigModel, randomiser_cls
) -> ValidatedConfig:
    """Validate a submitted configuration for the strategy class that will run it."""
    errors = []
    if spec.is_blinded and not randomiser_cls.USE_WITH_BLINDED:
        errors.append(f"{randomiser_cls.LABEL} cannot be used with a blinded randomization")
    if not spec.is_blinded and not randomiser_cls.USE_WITH_OPEN:
        errors.append(f"{randomiser_cls.LABEL} cannot be used with an open randomization")
    if config.extend_table and not randomiser_cls.CAN_EXTEND_TABLE:
        errors.append(f"{randomiser_cls.LABEL} does not support extending the allocation table")

    settings, settings_errors = SETTINGS_VALIDATORS[config.randomiser_type](
        spec, dict(config.settings)
    )
    errors.extend(settings_errors)
    if errors:
        raise ConfigInvalidError(errors)

    return ValidatedConfig(
        randomiser_type=config.randomiser_type,
        settings=settings,
        extend_table=config.extend_table,
    )


def check_production_edit(
    current: RandomiserConfigModel, proposed: ValidatedConfig, editable_settings
) -> None:
    """
    Once production allocations exist only the strategy's allow-listed
    settings may change.
    """
    errors = []
    if proposed.randomiser_type != current.randomiser_type:
        errors.append("The randomiser cannot be changed once records are randomised in production")
    if proposed.extend_table != current.extend_table:
        errors.append("Table extension cannot be changed once records are randomised in production")

    keys = set(current.settings) | set(proposed.settings)
    for key in sorted(keys - set(editable_settings)):
        if current.settings.get(key) != proposed.settings.get(key):
            errors.append(f"Setting '{key}' is not editable once records are randomised in production")
    if errors:
        raise ConfigInvalidError(errors)


def parse_random_integer_settings(spec: RandomizationSpec, settings: Dict[str, Any]) -> RandomIntegerSettings:
    coerced, errors = validate_random_integer_settings(spec, settings)
    if errors:
        raise ConfigInvalidError(errors)
    return RandomIntegerSettings(**coerced)


def parse_minimization_settings(spec: RandomizationSpec, settings: Dict[str, Any]) -> MinimizationSettings:
    coerced, errors = validate_minimization_settings(spec, settings)
    if errors:
        raise ConfigInvalidError(errors)

    factors = minimization_factors(spec)
    if len(factors) == 1:
        weights = {factors[0]: coerced.get(f"factor_weights-{factors[0]}", 1.0)}
    else:
        weights = {factor: coerced[f"factor_weights-{factor}"] for factor in factors}

    if spec.is_blinded:
        ratios = {item["group"]: item["ratio"] for item in coerced["allocation_ratios"]}
    else:
        ratios = {group.value: coerced[f"allocation_ratios-{group.value}"] for group in spec.groups}

    return MinimizationSettings(
        base_assignment_prob=coerced["base_assignment_prob"],
        logging_field=coerced.get("logging_field", ""),
        factor_weights=weights,
        allocation_ratios=ratios,
    )
