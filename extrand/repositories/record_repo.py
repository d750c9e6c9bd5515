# repositories/record_repo.py
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from extrand.models.orm.record_value import RecordValueORM


class RecordRepository:
    """Writes randomisation results into the study record's data."""

    def __init__(self, db: Session):
        self.db = db

    def get_value(self, randomization_id: str, record_id: str, field_name: str) -> Optional[str]:
        stmt = select(RecordValueORM.value).where(
            RecordValueORM.randomization_id == randomization_id,
            RecordValueORM.record_id == record_id,
            RecordValueORM.field_name == field_name,
        )
        return self.db.scalars(stmt).one_or_none()

    def save_value(self, randomization_id: str, record_id: str, field_name: str, value: str) -> None:
        """Insert or overwrite one field value and commit it."""
        db_value = RecordValueORM(
            randomization_id=randomization_id,
            record_id=record_id,
            field_name=field_name,
            value=value,
        )
        try:
            self.db.merge(db_value)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
