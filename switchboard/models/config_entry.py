"""
Runtime Configuration SQLAlchemy Model.

Database Schema:
    configuration_entries
    ├── id (PK, UUID)
    ├── key
    ├── environment_scope (environment name or "global", unique with key)
    ├── value_type (string / number / boolean / json)
    ├── value (raw text)
    ├── exposure_level (public / ops / internal / private)
    ├── sensitive
    ├── description, metadata (JSONB)
    └── timestamps
"""

from typing import Any

from sqlalchemy import Boolean, CheckConstraint, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from switchboard.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ConfigurationEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    A runtime configuration value.

    Several rows may share a key across environment scopes; reads prefer the
    exact environment over ``global``.
    """

    __tablename__ = "configuration_entries"

    key: Mapped[str] = mapped_column(String(160), nullable=False)

    environment_scope: Mapped[str] = mapped_column(String(40), nullable=False, default="global")

    value_type: Mapped[str] = mapped_column(String(20), nullable=False, default="string")

    value: Mapped[str] = mapped_column(Text, nullable=False)

    exposure_level: Mapped[str] = mapped_column(String(20), nullable=False, default="internal")

    sensitive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    entry_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )

    __table_args__ = (
        UniqueConstraint("key", "environment_scope", name="uq_configuration_entries_key_scope"),
        CheckConstraint(
            "value_type IN ('string', 'number', 'boolean', 'json')",
            name="value_type_valid",
        ),
        CheckConstraint(
            "exposure_level IN ('public', 'ops', 'internal', 'private')",
            name="exposure_level_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<ConfigurationEntry(key='{self.key}', scope='{self.environment_scope}')>"
