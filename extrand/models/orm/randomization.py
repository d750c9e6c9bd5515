from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, DateTime, Enum
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import Base, JSON_TYPE


class RandomizationStatus(enum.Enum):
    DEVELOPMENT = "DEVELOPMENT"
    PRODUCTION = "PRODUCTION"


# --- Randomization Model ---
class RandomizationORM(Base):
    __tablename__ = "randomizations"

    # --- Core Identifiers ---
    randomization_id = Column(String, primary_key=True, index=True)
    target_field = Column(String, nullable=False)
    is_blinded = Column(Boolean, default=False, nullable=False)

    # Levels of the group-membership factor (e.g. site); null when not grouped
    group_levels = Column(JSON_TYPE, nullable=True)

    status = Column(
        Enum(RandomizationStatus), default=RandomizationStatus.DEVELOPMENT, nullable=False
    )

    # --- Seeded draws ---
    seed = Column(Integer, nullable=True)
    seed_sequence = Column(Integer, default=0, nullable=False)

    # --- Strategy configuration ---
    randomiser_type = Column(String, default="default", nullable=False)
    settings = Column(JSON_TYPE, default=dict, nullable=False)
    extend_table = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    factors = relationship(
        "StratificationFactorORM",
        back_populates="randomization",
        order_by="StratificationFactorORM.position",
    )
    groups = relationship(
        "TreatmentGroupORM",
        back_populates="randomization",
        order_by="TreatmentGroupORM.position",
    )
    allocations = relationship("AllocationORM", back_populates="randomization")


class StratificationFactorORM(Base):
    __tablename__ = "stratification_factors"

    factor_id = Column(Integer, primary_key=True, autoincrement=True)
    randomization_id = Column(
        String, ForeignKey("randomizations.randomization_id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)
    field_name = Column(String, nullable=False)
    levels = Column(JSON_TYPE, nullable=False)

    randomization = relationship("RandomizationORM", back_populates="factors")


class TreatmentGroupORM(Base):
    __tablename__ = "treatment_groups"

    group_id = Column(Integer, primary_key=True, autoincrement=True)
    randomization_id = Column(
        String, ForeignKey("randomizations.randomization_id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)
    value = Column(String, nullable=False)
    label = Column(String, nullable=True)

    randomization = relationship("RandomizationORM", back_populates="groups")
