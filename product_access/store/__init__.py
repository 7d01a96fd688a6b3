from product_access.store.base import EntitlementStore
from product_access.store.memory import InMemoryEntitlementStore
from product_access.store.sql import SqlEntitlementStore

__all__ = [
    "EntitlementStore",
    "InMemoryEntitlementStore",
    "SqlEntitlementStore",
]
