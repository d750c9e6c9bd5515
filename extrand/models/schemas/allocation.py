import enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class RecordContext(BaseModel):
    """One record's stratification context for a randomisation call."""

    record_id: str
    fields: Dict[str, str] = Field(default_factory=dict)
    group_level: Optional[str] = None


class RandomiseRequestModel(BaseModel):
    fields: Dict[str, str] = Field(
        default_factory=dict, description="Stratification factor -> level for the record."
    )
    group_level: Optional[str] = Field(None, description="Group-membership level, e.g. site.")


class BatchRecordModel(RandomiseRequestModel):
    record_id: str


class BatchRandomiseRequestModel(BaseModel):
    records: List[BatchRecordModel] = Field(..., min_length=1)


class OutcomeStatus(str, enum.Enum):
    ALLOCATED = "ALLOCATED"
    EXHAUSTED = "EXHAUSTED"
    CLAIM_RACE_LOST = "CLAIM_RACE_LOST"
    ALREADY_RANDOMISED = "ALREADY_RANDOMISED"


class AllocationOutcome(BaseModel):
    """What a randomiser strategy did for one record."""

    status: OutcomeStatus
    allocation_id: Optional[int] = None
    message: str = ""
    retry: bool = False
    trace: List[str] = Field(default_factory=list)

    @property
    def allocated(self) -> bool:
        return self.status == OutcomeStatus.ALLOCATED


class FailureKind(str, enum.Enum):
    EXHAUSTED = "EXHAUSTED"
    CLAIM_RACE_LOST = "CLAIM_RACE_LOST"
    ALREADY_RANDOMISED = "ALREADY_RANDOMISED"
    STRATIFICATION_MISMATCH = "STRATIFICATION_MISMATCH"
    CONFIG_INVALID = "CONFIG_INVALID"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    INTERNAL = "INTERNAL"


class AllocationSummary(BaseModel):
    allocation_id: int
    target_value: Optional[str] = None
    target_alt_value: Optional[str] = None
    group: Optional[str] = None
    group_index: Optional[int] = None
    stratum_index: Optional[int] = None


class RandomisationResultModel(BaseModel):
    """Result of randomising one record, reported to the caller."""

    record_id: str
    result: bool
    message: str
    failure: Optional[FailureKind] = None
    retry: bool = False
    allocation: Optional[AllocationSummary] = None


class BatchRandomiseResponseModel(BaseModel):
    randomization_id: str
    randomised: int
    failed: int
    results: List[RandomisationResultModel]
