"""
Feature Flag SQLAlchemy Models.

This module defines the persisted governance state:
    - FeatureFlag: A flag definition with rollout policy
    - FeatureFlagTenantState: Per-tenant, per-environment forced decision
    - FeatureFlagAudit: Append-only log of every governance change

Database Schema:
    feature_flags
    ├── id (PK, UUID)
    ├── key (unique)
    ├── name, description
    ├── enabled, kill_switch
    ├── rollout_strategy, rollout_percentage (0-100)
    ├── segment_rules, variants, environments, metadata (JSONB)
    └── timestamps

    feature_flag_tenant_states
    ├── id (PK, UUID)
    ├── flag_id (FK → feature_flags)
    ├── tenant_id, environment (unique with flag_id)
    ├── state (forced_on / forced_off only; "inherited" is never stored)
    ├── variant_key, metadata (JSONB), updated_by
    └── timestamps

    feature_flag_audits
    ├── id (PK, UUID)
    ├── flag_id (FK → feature_flags)
    ├── tenant_id, environment (override changes only)
    ├── change_type
    ├── payload (JSONB before/after)
    ├── performed_by
    └── created_at
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from switchboard.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class FeatureFlag(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    A feature flag definition.

    Attributes:
        key: Globally unique machine-readable key (e.g., "commerce.checkout-v2").
        enabled: Master switch.
        kill_switch: Hard stop that wins over everything, overrides included.
        rollout_strategy: boolean, percentage, segment or schedule.
        rollout_percentage: Bucket threshold for percentage/schedule (0-100).
        segment_rules: Targeting predicate (camelCase JSON).
        variants: Ordered [{key, weight}] list.
        environments: Environments the flag is live in (empty = all).
        flag_metadata: Ownership metadata (column "metadata").
    """

    __tablename__ = "feature_flags"

    key: Mapped[str] = mapped_column(
        String(120),
        nullable=False,
        unique=True,
        comment="Machine-readable key (e.g., 'commerce.checkout-v2')",
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    kill_switch: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Hard override to disabled regardless of any other field",
    )

    # Rollout Configuration
    rollout_strategy: Mapped[str] = mapped_column(
        String(20),
        default="boolean",
        nullable=False,
    )

    rollout_percentage: Mapped[int] = mapped_column(
        Integer,
        default=100,
        nullable=False,
    )

    segment_rules: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    variants: Mapped[list[Any]] = mapped_column(JSONB, nullable=False, default=list)

    environments: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)

    # "metadata" is reserved on declarative classes
    flag_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )

    # Relationships
    tenant_states: Mapped[list["FeatureFlagTenantState"]] = relationship(
        "FeatureFlagTenantState",
        back_populates="flag",
        cascade="all, delete-orphan",
        order_by="FeatureFlagTenantState.tenant_id",
    )

    __table_args__ = (
        CheckConstraint(
            "rollout_percentage >= 0 AND rollout_percentage <= 100",
            name="rollout_percentage_range",
        ),
        CheckConstraint(
            "rollout_strategy IN ('boolean', 'percentage', 'segment', 'schedule')",
            name="rollout_strategy_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<FeatureFlag(id={self.id}, key='{self.key}', strategy={self.rollout_strategy})>"


class FeatureFlagTenantState(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    A tenant override.

    ``tenant_id = "*"`` applies to every tenant and an environment of
    ``all``/``global``/``*`` applies to every environment.
    """

    __tablename__ = "feature_flag_tenant_states"

    flag_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("feature_flags.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    tenant_id: Mapped[str] = mapped_column(String(120), nullable=False)

    environment: Mapped[str] = mapped_column(String(40), nullable=False, default="production")

    state: Mapped[str] = mapped_column(String(20), nullable=False)

    variant_key: Mapped[str | None] = mapped_column(String(120), nullable=True)

    state_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )

    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    flag: Mapped["FeatureFlag"] = relationship("FeatureFlag", back_populates="tenant_states")

    __table_args__ = (
        UniqueConstraint("flag_id", "tenant_id", "environment", name="uq_feature_flag_tenant_states_scope"),
        CheckConstraint("state IN ('forced_on', 'forced_off')", name="state_concrete"),
        Index("ix_feature_flag_tenant_states_tenant", "tenant_id", "environment"),
    )


class FeatureFlagAudit(UUIDPrimaryKeyMixin, Base):
    """
    Immutable audit record for governance changes.

    Example payload JSONB:
        {
            "before": {"rollout_percentage": 10},
            "after": {"rollout_percentage": 50}
        }
    """

    __tablename__ = "feature_flag_audits"

    flag_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("feature_flags.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    tenant_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    environment: Mapped[str | None] = mapped_column(String(40), nullable=True)

    change_type: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="definition-created, tenant-override-applied, ...",
    )

    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)

    # Timestamp (immutable - no updated_at needed)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_feature_flag_audits_flag_created", "flag_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<FeatureFlagAudit(id={self.id}, change_type='{self.change_type}')>"
