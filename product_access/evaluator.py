"""
Pure access evaluation.

evaluate() maps (entitlement row, product, now) to an AccessDecision. It never
performs I/O and never mutates the row: trial expiry is a function of the
clock and the usage counter, so it is re-derived on every read instead of
trusting the stored status. The stored status is authoritative only for
states that need an explicit transition (cancelled, admin_granted, active).
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from product_access.models import (
    AccessDecision,
    AccessStatus,
    EntitlementStatus,
    Product,
    TrialInfo,
    UserEntitlement,
)

ONE_DAY = timedelta(days=1)

REASON_CANCELLED = "subscription cancelled"
REASON_ADMIN_ENDED = "admin-granted access ended"
REASON_PERIOD_ENDED = "subscription period ended"
REASON_USES_EXHAUSTED = "trial uses exhausted"
REASON_TRIAL_ENDED = "trial period ended"
REASON_TRIAL_MISCONFIGURED = "trial misconfigured"


def days_remaining(ends_at: datetime, now: datetime) -> int:
    """Whole days left, rounded up; 0 at or after the end."""
    remaining = ends_at - now
    if remaining <= timedelta(0):
        return 0
    return math.ceil(remaining / ONE_DAY)


def _ended(ends_at: Optional[datetime], now: datetime) -> bool:
    return ends_at is not None and now > ends_at


def _evaluate_trial(entitlement: UserEntitlement, product_id: str, now: datetime) -> AccessDecision:
    usage_metered = entitlement.usage_limit is not None
    time_metered = entitlement.trial_ends_at is not None

    if not usage_metered and not time_metered:
        return AccessDecision(
            has_access=False,
            status=AccessStatus.EXPIRED,
            reason=REASON_TRIAL_MISCONFIGURED,
            product_id=product_id,
        )

    days_left = days_remaining(entitlement.trial_ends_at, now) if time_metered else None

    if usage_metered:
        info = TrialInfo(
            usage_count=entitlement.usage_count,
            usage_limit=entitlement.usage_limit,
            days_remaining=days_left,
        )
        if entitlement.usage_count >= entitlement.usage_limit:
            return AccessDecision(
                has_access=False,
                status=AccessStatus.EXPIRED,
                reason=REASON_USES_EXHAUSTED,
                trial_info=info,
                product_id=product_id,
            )
        if _ended(entitlement.trial_ends_at, now):
            return AccessDecision(
                has_access=False,
                status=AccessStatus.EXPIRED,
                reason=REASON_TRIAL_ENDED,
                trial_info=info,
                product_id=product_id,
            )
        return AccessDecision(
            has_access=True,
            status=AccessStatus.TRIAL,
            trial_info=info,
            product_id=product_id,
        )

    if _ended(entitlement.trial_ends_at, now):
        return AccessDecision(
            has_access=False,
            status=AccessStatus.EXPIRED,
            reason=REASON_TRIAL_ENDED,
            trial_info=TrialInfo(days_remaining=0),
            product_id=product_id,
        )
    return AccessDecision(
        has_access=True,
        status=AccessStatus.TRIAL,
        trial_info=TrialInfo(days_remaining=days_left),
        product_id=product_id,
    )


def evaluate(
    entitlement: Optional[UserEntitlement],
    product: Product,
    now: datetime,
) -> AccessDecision:
    """Resolve access in fixed precedence: cancelled -> admin -> active -> trial -> expired."""
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    product_id = product.id

    if entitlement is None:
        return AccessDecision(has_access=False, status=AccessStatus.LOCKED, product_id=product_id)

    if entitlement.product_id != product_id:
        raise ValueError(
            f"entitlement for product '{entitlement.product_id}' evaluated against '{product_id}'"
        )

    status = entitlement.status

    if status is EntitlementStatus.CANCELLED:
        return AccessDecision(
            has_access=False,
            status=AccessStatus.CANCELLED,
            reason=REASON_CANCELLED,
            product_id=product_id,
        )

    if status is EntitlementStatus.ADMIN_GRANTED:
        if _ended(entitlement.access_ends_at, now):
            return AccessDecision(
                has_access=False,
                status=AccessStatus.EXPIRED,
                reason=REASON_ADMIN_ENDED,
                product_id=product_id,
            )
        return AccessDecision(has_access=True, status=AccessStatus.ADMIN_GRANTED, product_id=product_id)

    if status is EntitlementStatus.ACTIVE:
        if _ended(entitlement.access_ends_at, now):
            return AccessDecision(
                has_access=False,
                status=AccessStatus.EXPIRED,
                reason=REASON_PERIOD_ENDED,
                product_id=product_id,
            )
        return AccessDecision(has_access=True, status=AccessStatus.ACTIVE, product_id=product_id)

    if status is EntitlementStatus.TRIAL:
        return _evaluate_trial(entitlement, product_id, now)

    return AccessDecision(has_access=False, status=AccessStatus.EXPIRED, product_id=product_id)
