from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import JSON

# JSONB on PostgreSQL, plain JSON elsewhere (e.g. SQLite in tests)
JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


class CustomBase:
    def __repr__(self) -> str:
        class_name = self.__class__.__name__

        columns = [(c.name, getattr(self, c.name)) for c in self.__table__.columns]

        column_str = ", ".join(f"{name}={repr(value)}" for name, value in columns)

        return f"{class_name}({column_str})"

    def to_dict(self):
        """Converts the ORM object's columns to a dictionary."""
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}


Base = declarative_base(cls=CustomBase)
