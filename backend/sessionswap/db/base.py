# Contains ONLY the SQLAlchemy declarative Base.
# Model modules import from here; sessionswap.models registers them all for create_all / Alembic.

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Single declarative base for all SessionSwap ORM models."""
    pass
