"""
SQLAlchemy Base Model.

This module defines the declarative base class and common mixins
used by the flag, override, audit and configuration tables.

Design Principles:
    - All models inherit from Base for table creation
    - TimestampMixin provides consistent created_at/updated_at
    - UUID primary keys; ids leave the store as strings
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, MetaData, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Naming convention for constraints (required for Alembic autogenerate)
NAMING_CONVENTION: dict[str, str] = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """
    Declarative base class for all Switchboard tables.

    Attributes:
        metadata: SQLAlchemy metadata with naming convention.
        type_annotation_map: Maps Python types to SQL types.
    """

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    type_annotation_map: dict[type, Any] = {
        uuid.UUID: UUID(as_uuid=True),
        datetime: DateTime(timezone=True),
    }

    def __repr__(self) -> str:
        class_name = self.__class__.__name__
        pk_cols = [col.name for col in self.__table__.primary_key.columns]
        pk_values = [getattr(self, col, None) for col in pk_cols]
        pk_str = ", ".join(f"{k}={v}" for k, v in zip(pk_cols, pk_values))
        return f"<{class_name}({pk_str})>"


class UUIDPrimaryKeyMixin:
    """Adds a client-generated UUID primary key."""

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at columns.

    Note:
        updated_at is automatically set on UPDATE via onupdate=func.now()
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
