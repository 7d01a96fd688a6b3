"""
Access facade consumed by feature gates.

Loads a user's raw entitlement rows and the product catalog through the
read cache and evaluates a fresh AccessDecision on every call. Gate checks
run under a short timeout and fail closed: any store or cache failure
becomes a ``locked`` decision carrying FAIL_CLOSED_REASON, never an
exception and never access.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from product_access.audit import log_access_denied
from product_access.cache import EntitlementCache
from product_access.catalog import ProductCatalog
from product_access.config import DEFAULT_GATE_TIMEOUT_SECONDS
from product_access.errors import StoreUnavailableError
from product_access.evaluator import evaluate
from product_access.meter import UsageMeter
from product_access.models import (
    AccessDecision,
    AccessStatus,
    Product,
    UsageResult,
    UserEntitlement,
    utc_now,
)
from product_access.store.base import EntitlementStore

logger = logging.getLogger(__name__)

FAIL_CLOSED_ERROR_CODE = "ENTITLEMENTS_UNAVAILABLE_FAIL_CLOSED"
FAIL_CLOSED_REASON = "entitlements unavailable"
UNKNOWN_PRODUCT_REASON = "unknown product"

PAID_STATUSES = (AccessStatus.ACTIVE, AccessStatus.ADMIN_GRANTED)


class AccessService:
    """Per-feature access queries with cached rows and fail-closed gate checks."""

    def __init__(
        self,
        store: EntitlementStore,
        *,
        cache: Optional[EntitlementCache] = None,
        meter: Optional[UsageMeter] = None,
        clock: Callable[[], datetime] = utc_now,
        gate_timeout_seconds: float = DEFAULT_GATE_TIMEOUT_SECONDS,
        support_alert_sink: Optional[Callable[[str, dict], None]] = None,
    ) -> None:
        self._store = store
        self.cache = cache or EntitlementCache()
        self._meter = meter or UsageMeter(store, cache=self.cache, clock=clock)
        self._clock = clock
        self._gate_timeout_seconds = gate_timeout_seconds
        self._support_alert_sink = support_alert_sink or (lambda code, payload: None)
        self._executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="entitlement-gate")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # -- loading -----------------------------------------------------------

    def _load_rows(self, user_id: str) -> List[UserEntitlement]:
        cached = self.cache.get_entitlements(user_id)
        if cached is not None:
            return cached
        # read before the store so a mutation committed mid-load wins
        generation = self.cache.generation(user_id)
        rows = self._store.get_entitlements(user_id)
        if generation is not None:
            self.cache.set_entitlements(user_id, rows, expected_generation=generation)
        return rows

    def _load_products(self) -> List[Product]:
        cached = self.cache.get_products()
        if cached is not None:
            return cached
        products = self._store.get_products()
        self.cache.set_products(products)
        return products

    def _load(self, user_id: str) -> Tuple[List[UserEntitlement], ProductCatalog]:
        return self._load_rows(user_id), ProductCatalog(self._load_products())

    def _load_with_timeout(self, user_id: str) -> Tuple[List[UserEntitlement], ProductCatalog]:
        future = self._executor.submit(self._load, user_id)
        try:
            return future.result(timeout=self._gate_timeout_seconds)
        except FutureTimeoutError as exc:
            # a load that is already running finishes in the background; its
            # cache write is dropped if the user was invalidated meanwhile
            future.cancel()
            raise StoreUnavailableError("gate check", exc) from exc

    def _fail_closed(self, user_id: str, product_id: str, exc: Exception) -> AccessDecision:
        payload = {
            "user_id": user_id,
            "product_id": product_id,
            "error": str(exc),
            "error_code": FAIL_CLOSED_ERROR_CODE,
            "occurred_at": utc_now().isoformat(),
        }
        logger.warning("Entitlement check failed closed", extra=payload)
        self._support_alert_sink(FAIL_CLOSED_ERROR_CODE, payload)
        return AccessDecision(
            has_access=False,
            status=AccessStatus.LOCKED,
            reason=FAIL_CLOSED_REASON,
            product_id=product_id,
        )

    # -- evaluation --------------------------------------------------------

    @staticmethod
    def _decide(
        rows_by_product: Dict[str, UserEntitlement],
        catalog: ProductCatalog,
        product_id: str,
        now: datetime,
    ) -> AccessDecision:
        product = catalog.find(product_id)
        if product is None:
            return AccessDecision(
                has_access=False,
                status=AccessStatus.LOCKED,
                reason=UNKNOWN_PRODUCT_REASON,
                product_id=product_id,
            )

        decision = evaluate(rows_by_product.get(product.id), product, now)
        if decision.has_access:
            return decision

        # a bundle (e.g. full_suite) unlocks every product it includes
        for bundle in catalog.bundles_including(product.id):
            bundle_decision = evaluate(rows_by_product.get(bundle.id), bundle, now)
            if bundle_decision.has_access:
                return replace(bundle_decision, product_id=product.id, via_product_id=bundle.id)
        return decision

    def get_access(self, user_id: str, product_id: str, *, now: Optional[datetime] = None) -> AccessDecision:
        """Gate check. Never raises for store problems; denies instead."""
        user_id = str(user_id).strip()
        product_id = str(product_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        if not product_id:
            raise ValueError("product_id is required")

        try:
            rows, catalog = self._load_with_timeout(user_id)
        except Exception as exc:  # fail-closed on any store, cache, or decode failure
            return self._fail_closed(user_id, product_id, exc)

        decision = self._decide({r.product_id: r for r in rows}, catalog, product_id, now or self._clock())
        if not decision.has_access:
            log_access_denied(user_id, decision)
        return decision

    def get_all_access(self, user_id: str, *, now: Optional[datetime] = None) -> Dict[str, AccessDecision]:
        """Decisions for every offered product, e.g. for a 'my products' page."""
        user_id = str(user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")

        try:
            rows, catalog = self._load_with_timeout(user_id)
        except Exception as exc:  # fail-closed, as for single gate checks
            self._fail_closed(user_id, "*", exc)
            return {}

        at = now or self._clock()
        by_product = {r.product_id: r for r in rows}
        return {p.id: self._decide(by_product, catalog, p.id, at) for p in catalog.list()}

    def get_all_products(self, *, include_inactive: bool = False) -> List[Product]:
        return ProductCatalog(self._load_products()).list(include_inactive=include_inactive)

    def can_use_feature(
        self,
        user_id: str,
        product_id: str,
        feature_key: str,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        decision = self.get_access(user_id, product_id, now=now)
        if not decision.has_access:
            return False
        try:
            product = ProductCatalog(self._load_products()).get(product_id)
        except Exception:  # fail-closed
            logger.warning(
                "Feature check failed closed",
                extra={"user_id": user_id, "product_id": product_id, "feature_key": feature_key},
            )
            return False
        return decision.can_use_feature(product, feature_key)

    # -- usage -------------------------------------------------------------

    def increment_usage(self, user_id: str, product_id: str, *, now: Optional[datetime] = None) -> UsageResult:
        return self._meter.increment_usage(user_id, product_id, now=now)

    def use_feature(self, user_id: str, product_id: str, *, now: Optional[datetime] = None) -> UsageResult:
        """
        Authorize one use of a gated action.

        Paid, granted, and time-trial access pass without metering; a
        usage-metered trial debits one use through the usage meter.
        """
        decision = self.get_access(user_id, product_id, now=now)
        if not decision.has_access:
            return UsageResult(allowed=False)
        if decision.status in PAID_STATUSES:
            return UsageResult(allowed=True)
        if decision.trial_info is not None and decision.trial_info.usage_limit is not None:
            return self._meter.increment_usage(user_id, decision.via_product_id or product_id, now=now)
        return UsageResult(allowed=True)

    # -- cache control -----------------------------------------------------

    def invalidate(self, user_id: str) -> None:
        self.cache.invalidate(user_id)

    def refresh(self, user_id: str) -> List[UserEntitlement]:
        """Manual refresh: drop cached rows and reload them from the store."""
        self.cache.invalidate(user_id)
        self.cache.invalidate_products()
        return self._load_rows(str(user_id).strip())
