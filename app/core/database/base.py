"""
SQLAlchemy declarative base and common model utilities.

All SQLAlchemy models should inherit from Base and use ULID string primary keys.
"""
from datetime import datetime, timezone
from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from ulid import ULID


ID_LENGTH = 26


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_ulid() -> str:
    """Generate a new ULID string (the canonical identifier type for every record)."""
    return str(ULID())


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Usage:
        from app.core.database.base import Base, IdMixin

        class Permission(Base, IdMixin):
            __tablename__ = "permissions"
            name: Mapped[str] = mapped_column(String(100))
    """
    pass


class IdMixin:
    """Mixin adding a ULID primary key column named ``id``."""
    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True, default=generate_ulid)


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
