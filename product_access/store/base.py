"""
Entitlement store contract.

The store owns durable state. The engine reads and writes only through these
calls; the two that guard concurrent writers are single atomic operations:

- conditional_increment_usage: UPDATE ... WHERE usage_count < usage_limit
- compare_and_set_status: UPDATE ... WHERE status = ? AND updated_at = ?
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from product_access.models import (
    AdminAction,
    EntitlementStatus,
    IncrementResult,
    Product,
    UserEntitlement,
)


@runtime_checkable
class EntitlementStore(Protocol):
    def get_entitlements(self, user_id: str) -> List[UserEntitlement]:
        ...

    def get_entitlement(self, user_id: str, product_id: str) -> Optional[UserEntitlement]:
        ...

    def get_products(self) -> List[Product]:
        ...

    def upsert_entitlement(self, row: UserEntitlement) -> UserEntitlement:
        """Insert or replace the row for (user_id, product_id); returns the stored row."""
        ...

    def conditional_increment_usage(self, user_id: str, product_id: str, now: datetime) -> IncrementResult:
        """Atomically add one use to a live usage-metered trial that is under its limit."""
        ...

    def compare_and_set_status(
        self,
        row: UserEntitlement,
        status: EntitlementStatus,
        now: datetime,
    ) -> bool:
        """Set status only if the stored row still has row.status and row.updated_at."""
        ...

    def list_all_entitlements(self) -> List[UserEntitlement]:
        ...

    def list_all_users(self) -> List[dict]:
        ...

    def record_admin_action(self, action: AdminAction) -> None:
        ...

    def list_admin_actions(self, *, target_user_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        """Audit records as dicts, newest first."""
        ...
