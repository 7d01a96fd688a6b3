"""
Wiring for the entitlement engine.

The facade, usage meter, and administrator share one EntitlementCache so
that every mutation invalidates exactly what gate checks read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from product_access.admin import EntitlementAdministrator
from product_access.cache import EntitlementCache
from product_access.catalog import CatalogLoader, load_catalog_file
from product_access.config import Settings, get_settings
from product_access.db import create_db_engine, create_schema, create_session_factory
from product_access.meter import UsageMeter
from product_access.models import utc_now
from product_access.service import AccessService
from product_access.store.base import EntitlementStore
from product_access.store.sql import SqlEntitlementStore

logger = logging.getLogger(__name__)


@dataclass
class EntitlementEngine:
    store: EntitlementStore
    cache: EntitlementCache
    catalog: CatalogLoader
    meter: UsageMeter
    access: AccessService
    admin: EntitlementAdministrator

    def close(self) -> None:
        self.access.close()


def build_engine(
    store: EntitlementStore,
    *,
    cache: Optional[EntitlementCache] = None,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utc_now,
    support_alert_sink: Optional[Callable[[str, dict], None]] = None,
) -> EntitlementEngine:
    settings = settings or get_settings()
    cache = cache or EntitlementCache(settings.redis_url, ttl_seconds=settings.cache_ttl_seconds)
    catalog = CatalogLoader(store.get_products)
    meter = UsageMeter(store, cache=cache, clock=clock)
    access = AccessService(
        store,
        cache=cache,
        meter=meter,
        clock=clock,
        gate_timeout_seconds=settings.gate_timeout_seconds,
        support_alert_sink=support_alert_sink,
    )
    admin = EntitlementAdministrator(store, catalog, cache=cache, clock=clock)
    return EntitlementEngine(store=store, cache=cache, catalog=catalog, meter=meter, access=access, admin=admin)


def build_sql_engine(settings: Optional[Settings] = None, *, seed_catalog: bool = True) -> EntitlementEngine:
    """Database-backed engine; seeds the product table from the catalog file."""
    settings = settings or get_settings()
    db_engine = create_db_engine(settings)
    create_schema(db_engine)
    store = SqlEntitlementStore(create_session_factory(db_engine))
    if seed_catalog and settings.catalog_path.exists():
        products = load_catalog_file(settings.catalog_path)
        store.upsert_products(products)
        logger.info("Seeded product catalog", extra={"path": str(settings.catalog_path), "count": len(products)})
    return build_engine(store, settings=settings)
