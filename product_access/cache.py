"""
Read cache for raw entitlement rows and the product catalog.

Only stored facts are cached, never AccessDecisions: decisions depend on the
current time and are recomputed on every gate check. Entries are dropped on
every admin mutation, every successful usage increment, on manual refresh,
and after a bounded TTL so changes made by other processes become visible.

Redis is used when REDIS_URL is configured and reachable; otherwise a
process-local dict with the same TTL semantics.

Each user also has an invalidation generation. ``invalidate`` bumps it, and
a loader that read rows from the store before the bump cannot write them
back: ``set_entitlements(..., expected_generation=...)`` only stores rows
when the generation is still the one the loader saw before reading.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple

import redis

from product_access.models import Product, UserEntitlement

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1
DEFAULT_TTL_SECONDS = 300
PRODUCTS_KEY = "products:v1"
# must outlive any in-flight store read
GENERATION_TTL_SECONDS = 86400


class EntitlementCache:
    """Redis-backed row cache with in-memory fallback."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._redis: Optional[redis.Redis] = None
        self._mem: Dict[str, Tuple[float, dict]] = {}
        self._generations: Dict[str, int] = {}
        self._lock = RLock()

        if redis_url:
            try:
                client = redis.from_url(redis_url, decode_responses=True, socket_timeout=1, socket_connect_timeout=1)
                client.ping()
                self._redis = client
            except redis.RedisError as exc:
                logger.warning("Redis unavailable, using in-memory entitlement cache", extra={"error": str(exc)})

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    @staticmethod
    def _require_user_id(user_id: str) -> str:
        normalized = str(user_id).strip()
        if not normalized:
            raise ValueError("user_id is required")
        return normalized

    @staticmethod
    def _key(user_id: str) -> str:
        return f"entitlements:v1:{user_id}"

    @staticmethod
    def _generation_key(user_id: str) -> str:
        return f"entitlements:v1:{user_id}:gen"

    # -- raw storage -------------------------------------------------------

    def _get_payload(self, key: str) -> Optional[dict]:
        if self._redis is not None:
            try:
                raw = self._redis.get(key)
            except redis.RedisError as exc:
                logger.warning("Entitlement cache get failed", extra={"key": key, "error": str(exc)})
                return None
            return json.loads(raw) if raw else None

        with self._lock:
            entry = self._mem.get(key)
            if entry is None:
                return None
            cached_at, payload = entry
            if self._clock() - cached_at > self._ttl_seconds:
                self._mem.pop(key, None)
                return None
            return payload

    def _set_payload(self, key: str, payload: dict) -> None:
        if self._redis is not None:
            try:
                self._redis.setex(key, self._ttl_seconds, json.dumps(payload))
            except redis.RedisError as exc:
                logger.warning("Entitlement cache set failed", extra={"key": key, "error": str(exc)})
            return

        with self._lock:
            self._mem[key] = (self._clock(), payload)

    def _delete(self, key: str) -> None:
        if self._redis is not None:
            try:
                self._redis.delete(key)
            except redis.RedisError as exc:
                logger.error("Entitlement cache invalidation failed", extra={"key": key, "error": str(exc)})
        with self._lock:
            self._mem.pop(key, None)

    # -- entitlement rows --------------------------------------------------

    def get_entitlements(self, user_id: str) -> Optional[List[UserEntitlement]]:
        payload = self._get_payload(self._key(self._require_user_id(user_id)))
        if payload is None:
            return None
        _check_schema(payload)
        return [_decode_entitlement(item) for item in payload["rows"]]

    def generation(self, user_id: str) -> Optional[int]:
        """
        Current invalidation generation for a user.

        Returns None when Redis cannot be read; callers then skip the
        cache write rather than risk storing rows from before a mutation.
        """
        user_id = self._require_user_id(user_id)
        if self._redis is not None:
            try:
                return int(self._redis.get(self._generation_key(user_id)) or 0)
            except redis.RedisError as exc:
                logger.warning(
                    "Entitlement cache generation read failed",
                    extra={"user_id": user_id, "error": str(exc)},
                )
                return None

        with self._lock:
            return self._generations.get(user_id, 0)

    def set_entitlements(
        self,
        user_id: str,
        rows: List[UserEntitlement],
        *,
        expected_generation: Optional[int] = None,
    ) -> bool:
        """
        Cache a user's rows. Returns False when nothing was written.

        With ``expected_generation`` the write is skipped if ``invalidate``
        ran since that generation was read.
        """
        user_id = self._require_user_id(user_id)
        key = self._key(user_id)
        payload = {"schema_version": CACHE_SCHEMA_VERSION, "rows": [_encode_entitlement(r) for r in rows]}

        if expected_generation is None:
            self._set_payload(key, payload)
            return True

        if self._redis is not None:
            return self._set_if_generation(user_id, key, payload, expected_generation)

        with self._lock:
            if self._generations.get(user_id, 0) != expected_generation:
                logger.info("Skipped stale entitlement cache write", extra={"user_id": user_id})
                return False
            self._mem[key] = (self._clock(), payload)
            return True

    def _set_if_generation(self, user_id: str, key: str, payload: dict, expected_generation: int) -> bool:
        generation_key = self._generation_key(user_id)
        try:
            with self._redis.pipeline(transaction=True) as pipe:
                pipe.watch(generation_key)
                current = int(pipe.get(generation_key) or 0)
                if current != expected_generation:
                    logger.info("Skipped stale entitlement cache write", extra={"user_id": user_id})
                    return False
                pipe.multi()
                pipe.setex(key, self._ttl_seconds, json.dumps(payload))
                pipe.execute()
                return True
        except redis.WatchError:
            logger.info("Skipped stale entitlement cache write", extra={"user_id": user_id})
            return False
        except redis.RedisError as exc:
            logger.warning("Entitlement cache set failed", extra={"key": key, "error": str(exc)})
            return False

    def invalidate(self, user_id: str) -> None:
        user_id = self._require_user_id(user_id)
        key = self._key(user_id)
        if self._redis is not None:
            generation_key = self._generation_key(user_id)
            try:
                pipe = self._redis.pipeline(transaction=True)
                pipe.incr(generation_key)
                pipe.expire(generation_key, GENERATION_TTL_SECONDS)
                pipe.delete(key)
                pipe.execute()
            except redis.RedisError as exc:
                logger.error("Entitlement cache invalidation failed", extra={"key": key, "error": str(exc)})
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self._mem.pop(key, None)

    # -- product catalog ---------------------------------------------------

    def get_products(self) -> Optional[List[Product]]:
        payload = self._get_payload(PRODUCTS_KEY)
        if payload is None:
            return None
        _check_schema(payload)
        return [_decode_product(item) for item in payload["products"]]

    def set_products(self, products: List[Product]) -> None:
        self._set_payload(
            PRODUCTS_KEY,
            {"schema_version": CACHE_SCHEMA_VERSION, "products": [_encode_product(p) for p in products]},
        )

    def invalidate_products(self) -> None:
        self._delete(PRODUCTS_KEY)


def _check_schema(payload: dict) -> None:
    if int(payload.get("schema_version", CACHE_SCHEMA_VERSION)) != CACHE_SCHEMA_VERSION:
        raise ValueError("Unsupported entitlement cache schema version")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


_DATETIME_FIELDS = (
    "trial_started_at",
    "trial_ends_at",
    "access_starts_at",
    "access_ends_at",
    "created_at",
    "updated_at",
)


def _encode_entitlement(row: UserEntitlement) -> dict:
    payload = {
        "user_id": row.user_id,
        "product_id": row.product_id,
        "status": row.status.value,
        "source": row.source.value if row.source is not None else None,
        "usage_count": row.usage_count,
        "usage_limit": row.usage_limit,
        "granted_by": row.granted_by,
        "note": row.note,
    }
    for name in _DATETIME_FIELDS:
        payload[name] = _iso(getattr(row, name))
    return payload


def _decode_entitlement(raw: dict) -> UserEntitlement:
    return UserEntitlement(
        user_id=raw["user_id"],
        product_id=raw["product_id"],
        status=raw["status"],
        source=raw.get("source"),
        usage_count=int(raw.get("usage_count") or 0),
        usage_limit=raw.get("usage_limit"),
        granted_by=raw.get("granted_by"),
        note=raw.get("note"),
        **{name: _parse(raw.get(name)) for name in _DATETIME_FIELDS},
    )


def _encode_product(product: Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "icon": product.icon,
        "price_monthly": product.price_monthly,
        "price_annual": product.price_annual,
        "trial_type": product.trial_type.value,
        "trial_limit": product.trial_limit,
        "is_active": product.is_active,
        "sort_order": product.sort_order,
        "trial_features": list(product.trial_features),
        "includes": list(product.includes),
    }


def _decode_product(raw: dict) -> Product:
    return Product(
        id=raw["id"],
        name=raw["name"],
        description=raw.get("description") or "",
        icon=raw.get("icon") or "",
        price_monthly=raw.get("price_monthly"),
        price_annual=raw.get("price_annual"),
        trial_type=raw.get("trial_type") or "none",
        trial_limit=raw.get("trial_limit"),
        is_active=bool(raw.get("is_active", True)),
        sort_order=int(raw.get("sort_order") or 0),
        trial_features=tuple(raw.get("trial_features") or ()),
        includes=tuple(raw.get("includes") or ()),
    )
