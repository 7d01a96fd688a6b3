"""
Staff-side entitlement mutations: grant, grant trial, revoke, bulk-expire.

Governance: only admin / super_admin / support roles may call these from the
HTTP layer. Every mutation records the acting staff id on the row and in the
admin_actions audit trail, then drops the affected user's cached rows.
Writes are last-writer-wins; repeating a call with the same arguments leaves
the row in the same state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from product_access.audit import emit_admin_action
from product_access.cache import EntitlementCache
from product_access.catalog import CatalogLoader
from product_access.errors import EntitlementNotFoundError, InvalidTrialConfigurationError
from product_access.evaluator import evaluate
from product_access.models import (
    AccessStatus,
    AdminActionType,
    EntitlementSource,
    EntitlementStatus,
    Product,
    TrialType,
    UserEntitlement,
    utc_now,
)
from product_access.store.base import EntitlementStore

logger = logging.getLogger(__name__)

# Role names that may grant, trial, revoke, and sweep entitlements
ALLOWED_ADMIN_ROLES = frozenset({"admin", "super_admin", "support"})

GRANTABLE_STATUSES = frozenset({EntitlementStatus.ACTIVE, EntitlementStatus.ADMIN_GRANTED})


def can_manage_entitlements(roles: List[str]) -> bool:
    """True if user has an admin, super admin, or support role."""
    return any(str(r).lower() in ALLOWED_ADMIN_ROLES for r in roles)


def _require_actor(actor_id: str) -> str:
    normalized = str(actor_id or "").strip()
    if not normalized:
        raise ValueError("actor_id is required for entitlement administration")
    return normalized


def _require_aware(value: Optional[datetime], name: str) -> None:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


@dataclass
class BulkExpireResult:
    scanned: int = 0
    expired: int = 0
    skipped: int = 0
    affected_user_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "expired": self.expired,
            "skipped": self.skipped,
            "affected_user_ids": list(self.affected_user_ids),
        }


class EntitlementAdministrator:
    def __init__(
        self,
        store: EntitlementStore,
        catalog: CatalogLoader,
        *,
        cache: Optional[EntitlementCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._cache = cache
        self._clock = clock

    def _product(self, product_id: str) -> Product:
        product = self._catalog.current().find(product_id)
        if product is None:
            # staff may have added the product since the catalog was loaded
            return self._catalog.reload().get(product_id)
        return product

    def _invalidate(self, user_id: str) -> None:
        # after the write has committed, never before
        if self._cache is not None:
            self._cache.invalidate(user_id)

    def grant_access(
        self,
        actor_id: str,
        user_id: str,
        product_id: str,
        *,
        status: EntitlementStatus = EntitlementStatus.ADMIN_GRANTED,
        note: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserEntitlement:
        """Grant paid or staff access. Replaces any in-progress trial; expires_at=None is indefinite."""
        actor_id = _require_actor(actor_id)
        status = EntitlementStatus(status)
        if status not in GRANTABLE_STATUSES:
            raise ValueError("status must be one of: active, admin_granted")
        _require_aware(expires_at, "expires_at")
        product = self._product(product_id)

        now = self._clock()
        if expires_at is not None and expires_at <= now:
            raise ValueError("Grant expiry must be in the future")
        # active means paid for; admin_granted is a comp
        if status is EntitlementStatus.ACTIVE:
            source = EntitlementSource.SUBSCRIPTION
        else:
            source = EntitlementSource.ADMIN_GRANT

        stored = self._store.upsert_entitlement(
            UserEntitlement(
                user_id=user_id,
                product_id=product.id,
                status=status,
                source=source,
                trial_started_at=None,
                trial_ends_at=None,
                usage_count=0,
                usage_limit=None,
                access_starts_at=now,
                access_ends_at=expires_at,
                granted_by=actor_id,
                note=note,
                updated_at=now,
            )
        )
        emit_admin_action(
            self._store,
            admin_id=actor_id,
            action_type=AdminActionType.GRANT_ACCESS,
            target_user_id=stored.user_id,
            product_id=product.id,
            details={
                "status": status.value,
                "note": note,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        self._invalidate(stored.user_id)
        return stored

    def grant_trial(
        self,
        actor_id: str,
        user_id: str,
        product_id: str,
        *,
        trial_starts_at: Optional[datetime] = None,
        trial_ends_at: Optional[datetime] = None,
        usage_limit: Optional[int] = None,
        note: Optional[str] = None,
    ) -> UserEntitlement:
        """
        Start (or restart) a trial metered the way the product says.

        Usage trials default to the product's trial_limit uses, time trials to
        trial_limit days from trial_starts_at. Supplying the other trial
        type's field is rejected. A previously exhausted trial can be
        re-granted; the usage counter starts again at zero.
        """
        actor_id = _require_actor(actor_id)
        _require_aware(trial_starts_at, "trial_starts_at")
        _require_aware(trial_ends_at, "trial_ends_at")
        product = self._product(product_id)

        now = self._clock()
        if trial_starts_at is not None and trial_starts_at > now:
            raise InvalidTrialConfigurationError(
                "trial_starts_at cannot be in the future", product_id=product.id, field="trial_starts_at"
            )
        starts_at = trial_starts_at or now

        if product.trial_type is TrialType.NONE:
            raise InvalidTrialConfigurationError(
                f"product '{product.id}' does not offer a trial", product_id=product.id
            )

        ends_at: Optional[datetime] = None
        limit: Optional[int] = None
        if product.trial_type is TrialType.USAGE:
            if trial_ends_at is not None:
                raise InvalidTrialConfigurationError(
                    f"product '{product.id}' has a usage trial; trial_ends_at is not allowed",
                    product_id=product.id,
                    field="trial_ends_at",
                )
            limit = product.trial_limit if usage_limit is None else int(usage_limit)
            if limit <= 0:
                raise InvalidTrialConfigurationError(
                    "usage_limit must be positive", product_id=product.id, field="usage_limit"
                )
        else:
            if usage_limit is not None:
                raise InvalidTrialConfigurationError(
                    f"product '{product.id}' has a time trial; usage_limit is not allowed",
                    product_id=product.id,
                    field="usage_limit",
                )
            ends_at = trial_ends_at or starts_at + timedelta(days=product.trial_limit)
            if ends_at <= starts_at:
                raise InvalidTrialConfigurationError(
                    "trial_ends_at must be after trial_starts_at", product_id=product.id, field="trial_ends_at"
                )

        stored = self._store.upsert_entitlement(
            UserEntitlement(
                user_id=user_id,
                product_id=product.id,
                status=EntitlementStatus.TRIAL,
                source=EntitlementSource.TRIAL_GRANT,
                trial_started_at=starts_at if ends_at is not None else None,
                trial_ends_at=ends_at,
                usage_count=0,
                usage_limit=limit,
                access_starts_at=starts_at,
                access_ends_at=None,
                granted_by=actor_id,
                note=note,
                updated_at=now,
            )
        )
        emit_admin_action(
            self._store,
            admin_id=actor_id,
            action_type=AdminActionType.GRANT_TRIAL,
            target_user_id=stored.user_id,
            product_id=product.id,
            details={
                "trial_type": product.trial_type.value,
                "usage_limit": limit,
                "trial_ends_at": ends_at.isoformat() if ends_at else None,
                "note": note,
            },
        )
        self._invalidate(stored.user_id)
        return stored

    def revoke_access(self, actor_id: str, user_id: str, product_id: str) -> UserEntitlement:
        """Cancel access. Trial and usage fields are kept for audit history."""
        actor_id = _require_actor(actor_id)
        row = self._store.get_entitlement(user_id, product_id)
        if row is None:
            raise EntitlementNotFoundError(user_id, product_id)

        now = self._clock()
        stored = self._store.upsert_entitlement(
            row.evolve(status=EntitlementStatus.CANCELLED, granted_by=actor_id, updated_at=now)
        )
        emit_admin_action(
            self._store,
            admin_id=actor_id,
            action_type=AdminActionType.REVOKE_ACCESS,
            target_user_id=stored.user_id,
            product_id=stored.product_id,
            details={"previous_status": row.status.value},
        )
        self._invalidate(stored.user_id)
        return stored

    def bulk_expire_stale_trials(self, actor_id: str, *, now: Optional[datetime] = None) -> BulkExpireResult:
        """
        Rewrite stored status to expired for trials the evaluator already
        considers expired. Reporting only: access checks never depend on it.

        Each rewrite is a compare-and-set on (status, updated_at), so a trial
        re-granted while the sweep runs is left alone. Safe to interrupt and
        to run repeatedly.
        """
        actor_id = _require_actor(actor_id)
        now = now or self._clock()
        catalog = self._catalog.current()
        reloaded = False
        result = BulkExpireResult()

        for row in self._store.list_all_entitlements():
            if row.status is not EntitlementStatus.TRIAL:
                continue
            result.scanned += 1

            product = catalog.find(row.product_id)
            if product is None and not reloaded:
                # the product may have been added after the catalog was loaded
                catalog = self._catalog.reload()
                reloaded = True
                product = catalog.find(row.product_id)
            if product is None:
                logger.warning(
                    "Skipping trial for unknown product",
                    extra={"user_id": row.user_id, "product_id": row.product_id},
                )
                result.skipped += 1
                continue

            decision = evaluate(row, product, now)
            if decision.status is not AccessStatus.EXPIRED:
                continue

            if not self._store.compare_and_set_status(row, EntitlementStatus.EXPIRED, now):
                logger.info(
                    "Trial changed during sweep; left as is",
                    extra={"user_id": row.user_id, "product_id": row.product_id},
                )
                result.skipped += 1
                continue

            result.expired += 1
            if row.user_id not in result.affected_user_ids:
                result.affected_user_ids.append(row.user_id)
            emit_admin_action(
                self._store,
                admin_id=actor_id,
                action_type=AdminActionType.EXPIRE_TRIAL,
                target_user_id=row.user_id,
                product_id=row.product_id,
                details={"reason": decision.reason},
            )
            self._invalidate(row.user_id)

        logger.info("Stale trial sweep completed", extra=result.to_dict())
        return result

    def list_admin_actions(self, *, target_user_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        """Audit trail, newest first, optionally for one user."""
        if limit <= 0:
            raise ValueError("limit must be positive")
        return self._store.list_admin_actions(target_user_id=target_user_id, limit=limit)

    def list_all_entitlements(self, *, include_users: bool = False) -> List[dict]:
        """Admin console listing, optionally joined with user display data."""
        rows = self._store.list_all_entitlements()
        users: Dict[str, dict] = {}
        if include_users:
            users = {str(u.get("id")): u for u in self._store.list_all_users()}

        listing = []
        for row in rows:
            item = {
                "user_id": row.user_id,
                "product_id": row.product_id,
                "status": row.status.value,
                "usage_count": row.usage_count,
                "usage_limit": row.usage_limit,
                "trial_ends_at": row.trial_ends_at.isoformat() if row.trial_ends_at else None,
                "access_ends_at": row.access_ends_at.isoformat() if row.access_ends_at else None,
                "granted_by": row.granted_by,
                "note": row.note,
                "updated_at": row.updated_at.isoformat() if row.updated_at else None,
            }
            if include_users:
                item["user"] = users.get(row.user_id)
            listing.append(item)
        return listing
