from datetime import datetime
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict, model_validator

from extrand.core.settings import config_settings
from extrand.models.orm.randomization import RandomizationStatus
from extrand.models.schemas.config import RandomiserConfigModel

BLINDED_GROUP = ("0", "Total")


class StratificationFactorConfig(BaseModel):
    """A stratification factor: source field and its possible levels, in order."""

    field_name: str = Field(..., min_length=1)
    levels: List[str] = Field(..., min_length=1)

    model_config = ConfigDict(from_attributes=True, frozen=True)


class TreatmentGroupConfig(BaseModel):
    value: str = Field(..., min_length=1, description="Value recorded for the group, e.g. '1'.")
    label: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)


class RandomizationCreateModel(BaseModel):
    """Data model for creating a randomization."""

    target_field: str
    is_blinded: bool = False
    factors: List[StratificationFactorConfig] = Field(
        default_factory=list, max_length=config_settings.MAX_STRATIFICATION_FACTORS
    )
    group_levels: Optional[List[str]] = Field(
        None, description="Levels of the group-membership factor (e.g. sites)."
    )
    groups: List[TreatmentGroupConfig] = Field(default_factory=list)
    status: RandomizationStatus = RandomizationStatus.DEVELOPMENT
    seed: Optional[int] = Field(None, description="Fixed seed making draws replayable.")

    @model_validator(mode="after")
    def check_groups_and_factors(self):
        if not self.is_blinded and not self.groups:
            raise ValueError("Open randomizations need at least one treatment group.")
        values = [g.value for g in self.groups]
        if len(values) != len(set(values)):
            raise ValueError("Treatment group values must be unique.")
        names = [f.field_name for f in self.factors]
        if len(names) != len(set(names)):
            raise ValueError("Stratification factor names must be unique.")
        return self


class RandomizationSpec(BaseModel):
    """Immutable view of one randomization, loaded once per operation."""

    randomization_id: str
    target_field: str
    is_blinded: bool
    factors: Tuple[StratificationFactorConfig, ...] = ()
    group_levels: Optional[Tuple[str, ...]] = None
    groups: Tuple[TreatmentGroupConfig, ...] = ()
    status: RandomizationStatus = RandomizationStatus.DEVELOPMENT

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def factor_names(self) -> List[str]:
        return [f.field_name for f in self.factors]

    @property
    def is_grouped(self) -> bool:
        return self.group_levels is not None

    @property
    def is_stratified(self) -> bool:
        return bool(self.factors) or self.is_grouped

    @property
    def reporting_groups(self) -> Dict[str, str]:
        """Group value -> label; a single synthetic group when blinded."""
        if self.is_blinded:
            return {BLINDED_GROUP[0]: BLINDED_GROUP[1]}
        return {g.value: g.label or g.value for g in self.groups}

    @property
    def number_column(self) -> str:
        """Allocation table column holding the randomization number."""
        return "target_value" if self.is_blinded else "target_alt_value"

    @property
    def group_column(self) -> str:
        """Allocation table column holding the treatment group."""
        return "target_alt_value" if self.is_blinded else "target_value"


class RandomizationResponseModel(BaseModel):
    randomization_id: str
    target_field: str
    is_blinded: bool
    factors: List[StratificationFactorConfig]
    group_levels: Optional[List[str]] = None
    groups: List[TreatmentGroupConfig]
    status: RandomizationStatus
    seed: Optional[int] = None
    seed_sequence: int = 0
    config: RandomiserConfigModel
    config_editable: bool = True
    created_at: Optional[datetime] = None
