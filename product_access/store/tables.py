"""
Database models for products, user entitlements, and admin audit actions.

user_entitlements is unique on (user_id, product_id). A missing row means
the user is locked out of the product; "locked" is never stored.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from product_access.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductRow(Base):
    """Purchasable product and its trial policy."""

    __tablename__ = "products"

    id = Column(String(64), primary_key=True, comment="Stable product slug, e.g. ai_concierge")
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    icon = Column(String(64), nullable=True)
    price_monthly = Column(Float, nullable=True)
    price_annual = Column(Float, nullable=True)
    trial_type = Column(
        String(16),
        nullable=False,
        default="none",
        comment="none | usage | time",
    )
    trial_limit = Column(
        Integer,
        nullable=True,
        comment="Max uses for usage trials, max days for time trials",
    )
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    trial_features = Column(JSON, nullable=False, default=list)
    includes = Column(JSON, nullable=False, default=list, comment="Product ids unlocked by this bundle")

    def __repr__(self) -> str:
        return f"<ProductRow(id={self.id}, trial_type={self.trial_type}, is_active={self.is_active})>"


class UserEntitlementRow(Base):
    """Per-user, per-product access record."""

    __tablename__ = "user_entitlements"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)",
    )
    user_id = Column(String(255), nullable=False, index=True)
    product_id = Column(String(64), nullable=False, index=True)
    status = Column(
        String(32),
        nullable=False,
        comment="active | trial | admin_granted | expired | cancelled",
    )
    source = Column(String(32), nullable=True, comment="admin_grant | trial_grant | subscription")

    trial_started_at = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True, index=True)
    usage_count = Column(Integer, nullable=False, default=0)
    usage_limit = Column(Integer, nullable=True)

    access_starts_at = Column(DateTime(timezone=True), nullable=True)
    access_ends_at = Column(DateTime(timezone=True), nullable=True)

    granted_by = Column(String(255), nullable=True, comment="Staff user id; null for self-service trials")
    note = Column(Text, nullable=True, comment="Audit annotation")

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_user_entitlements_user_product"),
        CheckConstraint("usage_count >= 0", name="ck_user_entitlements_usage_count_non_negative"),
        Index("idx_user_entitlements_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserEntitlementRow("
            f"user_id={self.user_id}, "
            f"product_id={self.product_id}, "
            f"status={self.status}, "
            f"usage={self.usage_count}/{self.usage_limit}"
            f")>"
        )


class AdminActionRow(Base):
    """Append-only audit trail of staff entitlement mutations."""

    __tablename__ = "admin_actions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    admin_id = Column(String(255), nullable=False, index=True)
    action_type = Column(String(64), nullable=False)
    target_user_id = Column(String(255), nullable=True, index=True)
    product_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AppUserRow(Base):
    """Display data for the admin console; not consulted by access checks."""

    __tablename__ = "app_users"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=True)
    full_name = Column(String(255), nullable=True)
