"""
Product entitlement and trial access control.

This package provides:
- evaluate: pure (entitlement, product, now) -> AccessDecision
- UsageMeter: atomic trial-use debit that never passes the usage limit
- EntitlementAdministrator: staff grant / trial / revoke / bulk-expire with audit
- AccessService: cached, fail-closed gate checks for feature code
- EntitlementCache: Redis-backed row cache with in-memory fallback
- InMemoryEntitlementStore / SqlEntitlementStore: store adapters
"""

from product_access.admin import (
    ALLOWED_ADMIN_ROLES,
    BulkExpireResult,
    EntitlementAdministrator,
    can_manage_entitlements,
)
from product_access.cache import EntitlementCache
from product_access.catalog import CatalogLoader, ProductCatalog, load_catalog_file
from product_access.engine import EntitlementEngine, build_engine, build_sql_engine
from product_access.errors import (
    AdminPermissionError,
    EntitlementError,
    EntitlementNotFoundError,
    InvalidTrialConfigurationError,
    ProductNotFoundError,
    StoreUnavailableError,
)
from product_access.evaluator import evaluate
from product_access.meter import UsageMeter
from product_access.models import (
    AccessDecision,
    AccessStatus,
    EntitlementStatus,
    Product,
    TrialInfo,
    TrialType,
    UsageResult,
    UserEntitlement,
)
from product_access.service import FAIL_CLOSED_REASON, AccessService
from product_access.store import EntitlementStore, InMemoryEntitlementStore, SqlEntitlementStore

__all__ = [
    # Models
    "AccessDecision",
    "AccessStatus",
    "EntitlementStatus",
    "Product",
    "TrialInfo",
    "TrialType",
    "UsageResult",
    "UserEntitlement",
    # Evaluation
    "evaluate",
    # Catalog
    "CatalogLoader",
    "ProductCatalog",
    "load_catalog_file",
    # Metering
    "UsageMeter",
    # Administration
    "ALLOWED_ADMIN_ROLES",
    "BulkExpireResult",
    "EntitlementAdministrator",
    "can_manage_entitlements",
    # Facade
    "AccessService",
    "FAIL_CLOSED_REASON",
    "EntitlementCache",
    # Stores
    "EntitlementStore",
    "InMemoryEntitlementStore",
    "SqlEntitlementStore",
    # Wiring
    "EntitlementEngine",
    "build_engine",
    "build_sql_engine",
    # Errors
    "AdminPermissionError",
    "EntitlementError",
    "EntitlementNotFoundError",
    "InvalidTrialConfigurationError",
    "ProductNotFoundError",
    "StoreUnavailableError",
]
