from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import Dict, Iterable, List, Optional, Tuple

from product_access.models import (
    AdminAction,
    EntitlementStatus,
    IncrementResult,
    Product,
    UserEntitlement,
    utc_now,
)


class InMemoryEntitlementStore:
    """Process-local store. Every operation holds one lock, so each call is atomic."""

    def __init__(
        self,
        products: Iterable[Product] = (),
        users: Iterable[dict] = (),
    ) -> None:
        self._lock = RLock()
        self._products: Dict[str, Product] = {p.id: p for p in products}
        self._rows: Dict[Tuple[str, str], UserEntitlement] = {}
        self._users: List[dict] = [dict(u) for u in users]
        self.admin_actions: List[AdminAction] = []

    def add_product(self, product: Product) -> None:
        with self._lock:
            self._products[product.id] = product

    def get_entitlements(self, user_id: str) -> List[UserEntitlement]:
        with self._lock:
            return [row for (uid, _), row in self._rows.items() if uid == user_id]

    def get_entitlement(self, user_id: str, product_id: str) -> Optional[UserEntitlement]:
        with self._lock:
            return self._rows.get((user_id, product_id))

    def get_products(self) -> List[Product]:
        with self._lock:
            return list(self._products.values())

    def upsert_entitlement(self, row: UserEntitlement) -> UserEntitlement:
        with self._lock:
            existing = self._rows.get(row.key)
            now = utc_now()
            created_at = existing.created_at if existing is not None else (row.created_at or now)
            stored = row.evolve(created_at=created_at, updated_at=row.updated_at or now)
            self._rows[row.key] = stored
            return stored

    def conditional_increment_usage(self, user_id: str, product_id: str, now: datetime) -> IncrementResult:
        with self._lock:
            row = self._rows.get((user_id, product_id))
            if (
                row is None
                or row.status is not EntitlementStatus.TRIAL
                or row.usage_limit is None
                or row.usage_count >= row.usage_limit
                or (row.trial_ends_at is not None and row.trial_ends_at < now)
            ):
                return IncrementResult(success=False)
            updated = row.evolve(usage_count=row.usage_count + 1, updated_at=now)
            self._rows[row.key] = updated
            return IncrementResult(success=True, new_count=updated.usage_count, usage_limit=updated.usage_limit)

    def compare_and_set_status(self, row: UserEntitlement, status: EntitlementStatus, now: datetime) -> bool:
        with self._lock:
            current = self._rows.get(row.key)
            if current is None or current.status is not row.status or current.updated_at != row.updated_at:
                return False
            self._rows[row.key] = current.evolve(status=status, updated_at=now)
            return True

    def list_all_entitlements(self) -> List[UserEntitlement]:
        with self._lock:
            return list(self._rows.values())

    def list_all_users(self) -> List[dict]:
        with self._lock:
            return [dict(u) for u in self._users]

    def record_admin_action(self, action: AdminAction) -> None:
        with self._lock:
            self.admin_actions.append(action)

    def list_admin_actions(self, *, target_user_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        with self._lock:
            # append-only, so reverse insertion order is newest first
            actions = [
                a
                for a in reversed(self.admin_actions)
                if target_user_id is None or a.target_user_id == target_user_id
            ]
        return [
            {
                "id": a.id,
                "admin_id": a.admin_id,
                "action_type": a.action_type.value,
                "target_user_id": a.target_user_id,
                "product_id": a.product_id,
                "details": dict(a.details),
                "created_at": a.created_at.isoformat(),
            }
            for a in actions[:limit]
        ]
