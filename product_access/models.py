from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple


class TrialType(str, Enum):
    NONE = "none"
    USAGE = "usage"
    TIME = "time"


class EntitlementStatus(str, Enum):
    """Persisted coarse state of a user entitlement row."""

    ACTIVE = "active"
    TRIAL = "trial"
    ADMIN_GRANTED = "admin_granted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class AccessStatus(str, Enum):
    """Evaluated state. LOCKED is derived only, never stored."""

    LOCKED = "locked"
    TRIAL = "trial"
    ACTIVE = "active"
    ADMIN_GRANTED = "admin_granted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EntitlementSource(str, Enum):
    ADMIN_GRANT = "admin_grant"
    TRIAL_GRANT = "trial_grant"
    SUBSCRIPTION = "subscription"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require_aware(value: Optional[datetime], name: str) -> None:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


def _require_id(value: str, name: str) -> str:
    normalized = str(value).strip()
    if not normalized:
        raise ValueError(f"{name} is required")
    return normalized


@dataclass(frozen=True)
class Product:
    """Purchasable product with pricing and trial policy."""

    id: str
    name: str
    description: str = ""
    icon: str = ""
    price_monthly: Optional[float] = None
    price_annual: Optional[float] = None
    trial_type: TrialType = TrialType.NONE
    trial_limit: Optional[int] = None
    is_active: bool = True
    sort_order: int = 0
    trial_features: Tuple[str, ...] = ()
    includes: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _require_id(self.id, "product id"))
        object.__setattr__(self, "trial_type", TrialType(self.trial_type))
        object.__setattr__(self, "trial_features", tuple(self.trial_features))
        object.__setattr__(self, "includes", tuple(self.includes))
        if self.trial_type is not TrialType.NONE:
            if self.trial_limit is None or int(self.trial_limit) <= 0:
                raise ValueError(
                    f"product '{self.id}' with trial_type={self.trial_type.value} needs a positive trial_limit"
                )

    @property
    def is_bundle(self) -> bool:
        return bool(self.includes)


@dataclass(frozen=True)
class UserEntitlement:
    """One row per (user, product). Stored status is a record, not the truth."""

    user_id: str
    product_id: str
    status: EntitlementStatus
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    usage_count: int = 0
    usage_limit: Optional[int] = None
    access_starts_at: Optional[datetime] = None
    access_ends_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    note: Optional[str] = None
    source: Optional[EntitlementSource] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_id", _require_id(self.user_id, "user_id"))
        object.__setattr__(self, "product_id", _require_id(self.product_id, "product_id"))
        object.__setattr__(self, "status", EntitlementStatus(self.status))
        if self.source is not None:
            object.__setattr__(self, "source", EntitlementSource(self.source))
        if self.usage_count < 0:
            raise ValueError("usage_count cannot be negative")
        for name in (
            "trial_started_at",
            "trial_ends_at",
            "access_starts_at",
            "access_ends_at",
            "created_at",
            "updated_at",
        ):
            _require_aware(getattr(self, name), name)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.user_id, self.product_id)

    def evolve(self, **changes: Any) -> "UserEntitlement":
        return replace(self, **changes)


@dataclass(frozen=True)
class TrialInfo:
    usage_count: Optional[int] = None
    usage_limit: Optional[int] = None
    days_remaining: Optional[int] = None

    def to_dict(self) -> dict:
        if self.usage_limit is not None:
            payload: dict = {"usage_count": self.usage_count, "usage_limit": self.usage_limit}
            if self.days_remaining is not None:
                payload["days_remaining"] = self.days_remaining
            return payload
        return {"days_remaining": self.days_remaining}


@dataclass(frozen=True)
class AccessDecision:
    """Read-time result of evaluating an entitlement against the clock."""

    has_access: bool
    status: AccessStatus
    reason: Optional[str] = None
    trial_info: Optional[TrialInfo] = None
    product_id: Optional[str] = None
    via_product_id: Optional[str] = None

    @property
    def trial_uses_remaining(self) -> Optional[int]:
        if self.trial_info is None or self.trial_info.usage_limit is None:
            return None
        return max(0, self.trial_info.usage_limit - (self.trial_info.usage_count or 0))

    @property
    def trial_days_remaining(self) -> Optional[int]:
        if self.trial_info is None:
            return None
        return self.trial_info.days_remaining

    def can_use_feature(self, product: Product, feature_key: str) -> bool:
        """Paid and granted access unlock everything; trials unlock the product's trial features."""
        if not self.has_access:
            return False
        if self.status in (AccessStatus.ACTIVE, AccessStatus.ADMIN_GRANTED):
            return True
        if self.status is AccessStatus.TRIAL:
            return str(feature_key).strip() in product.trial_features
        return False

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "has_access": self.has_access,
            "status": self.status.value,
            "reason": self.reason,
            "trial_info": self.trial_info.to_dict() if self.trial_info else None,
            "trial_uses_remaining": self.trial_uses_remaining,
            "trial_days_remaining": self.trial_days_remaining,
            "via_product_id": self.via_product_id,
        }


@dataclass(frozen=True)
class UsageResult:
    allowed: bool
    usage_count: Optional[int] = None
    usage_limit: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "usage_count": self.usage_count,
            "usage_limit": self.usage_limit,
        }


@dataclass(frozen=True)
class IncrementResult:
    """Outcome of the store's conditional increment."""

    success: bool
    new_count: Optional[int] = None
    usage_limit: Optional[int] = None


class AdminActionType(str, Enum):
    GRANT_ACCESS = "grant_access"
    GRANT_TRIAL = "grant_trial"
    REVOKE_ACCESS = "revoke_access"
    EXPIRE_TRIAL = "expire_trial"


@dataclass(frozen=True)
class AdminAction:
    """Append-only audit record for a staff mutation."""

    admin_id: str
    action_type: AdminActionType
    target_user_id: Optional[str]
    product_id: Optional[str]
    details: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        object.__setattr__(self, "admin_id", _require_id(self.admin_id, "admin_id"))
        object.__setattr__(self, "action_type", AdminActionType(self.action_type))
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))
