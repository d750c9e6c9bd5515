from sqlalchemy import Column, String, Text, DateTime, PrimaryKeyConstraint
from datetime import datetime

from .base import Base


class RecordValueORM(Base):
    """A single field value of a study record, as written by randomisation."""

    __tablename__ = "record_values"

    record_id = Column(String, nullable=False, index=True)
    randomization_id = Column(String, nullable=False, index=True)
    field_name = Column(String, nullable=False)
    value = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        PrimaryKeyConstraint(
            "record_id", "randomization_id", "field_name", name="record_value_pk"
        ),
    )
