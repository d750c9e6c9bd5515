from sqlalchemy import (
    Column,
    String,
    Integer,
    ForeignKey,
    DateTime,
    Enum,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import Base, JSON_TYPE
from .randomization import RandomizationStatus


class AllocationORM(Base):
    """One slot of the pre-generated allocation table."""

    __tablename__ = "allocations"

    allocation_id = Column(Integer, primary_key=True, autoincrement=True)
    randomization_id = Column(
        String, ForeignKey("randomizations.randomization_id"), nullable=False, index=True
    )
    status = Column(Enum(RandomizationStatus), nullable=False, index=True)

    # Canonical serialized StratumKey, e.g. "sex=1&age_band=2&group_by=site_a"
    stratum_key = Column(String, nullable=False, default="", index=True)
    # Factor name -> level, in declaration order
    levels = Column(JSON_TYPE, default=dict, nullable=False)
    group_level = Column(String, nullable=True)

    # Open: group / randomization number. Blinded: randomization number / concealed group.
    target_value = Column(String, nullable=True)
    target_alt_value = Column(String, nullable=True)

    is_used_by = Column(String, nullable=True, index=True)
    allocated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("randomization_id", "is_used_by", name="allocation_record_uq"),
    )

    randomization = relationship("RandomizationORM", back_populates="allocations")
