"""
Access facade: cached gate checks, fail-closed behaviour, bundles, and
feature-level helpers.
"""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from product_access.config import Settings
from product_access.engine import build_engine
from product_access.errors import StoreUnavailableError
from product_access.models import AccessStatus, EntitlementStatus, UserEntitlement
from product_access.service import FAIL_CLOSED_ERROR_CODE, FAIL_CLOSED_REASON

ADMIN = "staff-1"


def _direct_grant(store, user_id, product_id, status=EntitlementStatus.ACTIVE):
    # bypasses the administrator, so nothing invalidates the cache
    store.upsert_entitlement(UserEntitlement(user_id=user_id, product_id=product_id, status=status))


# ----- Cache -----

def test_cached_rows_served_until_ttl(engine, store, monotonic):
    assert engine.access.get_access("user-1", "snappro").status == AccessStatus.LOCKED
    _direct_grant(store, "user-1", "snappro")

    assert engine.access.get_access("user-1", "snappro").status == AccessStatus.LOCKED

    monotonic.value += 301
    assert engine.access.get_access("user-1", "snappro").status == AccessStatus.ACTIVE


def test_cache_hit_skips_store(engine, store):
    engine.access.get_access("user-1", "snappro")
    store.get_entitlements = MagicMock(side_effect=AssertionError("store should not be read"))

    decision = engine.access.get_access("user-1", "analytics")
    assert decision.status == AccessStatus.LOCKED
    assert decision.reason is None


def test_decisions_use_current_time_even_when_rows_are_cached(engine, clock):
    engine.admin.grant_trial(ADMIN, "user-1", "analytics")
    assert engine.access.get_access("user-1", "analytics").has_access is True

    clock.advance(days=7, seconds=1)
    decision = engine.access.get_access("user-1", "analytics")
    assert decision.has_access is False
    assert decision.reason == "trial period ended"


def test_refresh_drops_cached_rows(engine, store):
    engine.access.get_access("user-1", "snappro")
    _direct_grant(store, "user-1", "snappro")

    rows = engine.access.refresh("user-1")
    assert [r.product_id for r in rows] == ["snappro"]
    assert engine.access.get_access("user-1", "snappro").status == AccessStatus.ACTIVE


def test_invalidate_drops_cached_rows(engine, store):
    engine.access.get_access("user-1", "snappro")
    _direct_grant(store, "user-1", "snappro")

    engine.access.invalidate("user-1")
    assert engine.access.get_access("user-1", "snappro").has_access is True


# ----- Loads racing admin mutations -----

def _pause_after_first_read(store):
    """Hold the first get_entitlements call after it has read the rows."""
    read_done = threading.Event()
    release = threading.Event()
    real_get_entitlements = store.get_entitlements

    def paused_get_entitlements(user_id):
        rows = real_get_entitlements(user_id)
        if not read_done.is_set():
            read_done.set()
            release.wait(5)
        return rows

    store.get_entitlements = paused_get_entitlements
    return read_done, release


def test_revoke_during_in_flight_load_is_not_cached_over(engine, store):
    engine.admin.grant_access(ADMIN, "user-1", "snappro")
    read_done, release = _pause_after_first_read(store)
    seen = []

    loader = threading.Thread(target=lambda: seen.append(engine.access.get_access("user-1", "snappro")))
    loader.start()
    try:
        assert read_done.wait(5)
        engine.admin.revoke_access(ADMIN, "user-1", "snappro")
    finally:
        release.set()
        loader.join(5)

    # the racing check answered from its pre-revoke read
    assert seen[0].status == AccessStatus.ADMIN_GRANTED

    decision = engine.access.get_access("user-1", "snappro")
    assert decision.has_access is False
    assert decision.status == AccessStatus.CANCELLED


def test_timed_out_load_finishing_after_revoke_is_not_cached(store, cache, clock):
    read_done, release = _pause_after_first_read(store)
    cache_write_attempted = threading.Event()
    real_set_entitlements = cache.set_entitlements

    def tracking_set_entitlements(*args, **kwargs):
        try:
            return real_set_entitlements(*args, **kwargs)
        finally:
            cache_write_attempted.set()

    cache.set_entitlements = tracking_set_entitlements
    engine = build_engine(store, cache=cache, settings=Settings(gate_timeout_seconds=0.2), clock=clock)
    try:
        engine.admin.grant_access(ADMIN, "user-1", "snappro")

        first = engine.access.get_access("user-1", "snappro")
        assert first.has_access is False
        assert first.reason == FAIL_CLOSED_REASON

        assert read_done.wait(5)
        engine.admin.revoke_access(ADMIN, "user-1", "snappro")
        release.set()

        assert cache_write_attempted.wait(5)
        assert cache.get_entitlements("user-1") is None

        decision = engine.access.get_access("user-1", "snappro")
        assert decision.has_access is False
        assert decision.status == AccessStatus.CANCELLED
    finally:
        release.set()
        engine.close()


# ----- Fail closed -----

def test_store_failure_fails_closed_and_alerts(store, cache, clock):
    sink = MagicMock()
    engine = build_engine(store, cache=cache, settings=Settings(), clock=clock, support_alert_sink=sink)
    try:
        store.get_entitlements = MagicMock(side_effect=StoreUnavailableError("get_entitlements"))

        decision = engine.access.get_access("user-1", "snappro")
        assert decision.has_access is False
        assert decision.status == AccessStatus.LOCKED
        assert decision.reason == FAIL_CLOSED_REASON

        sink.assert_called_once()
        code, payload = sink.call_args[0]
        assert code == FAIL_CLOSED_ERROR_CODE
        assert payload["user_id"] == "user-1"
        assert payload["product_id"] == "snappro"
    finally:
        engine.close()


def test_unexpected_store_error_also_fails_closed(engine, store):
    store.get_entitlements = MagicMock(side_effect=RuntimeError("connection reset"))
    decision = engine.access.get_access("user-1", "snappro")
    assert decision.has_access is False
    assert decision.reason == FAIL_CLOSED_REASON


def test_slow_store_times_out_and_fails_closed(store, cache, clock):
    release = threading.Event()
    real_get_entitlements = store.get_entitlements

    def slow_get_entitlements(user_id):
        release.wait(5)
        return real_get_entitlements(user_id)

    store.get_entitlements = slow_get_entitlements
    engine = build_engine(store, cache=cache, settings=Settings(gate_timeout_seconds=0.05), clock=clock)
    try:
        decision = engine.access.get_access("user-1", "snappro")
        assert decision.has_access is False
        assert decision.reason == FAIL_CLOSED_REASON
    finally:
        release.set()
        engine.close()


def test_get_all_access_fails_closed_to_empty(engine, store):
    store.get_products = MagicMock(side_effect=StoreUnavailableError("get_products"))
    assert engine.access.get_all_access("user-1") == {}


def test_blank_ids_rejected(engine):
    with pytest.raises(ValueError):
        engine.access.get_access("", "snappro")
    with pytest.raises(ValueError):
        engine.access.get_access("user-1", " ")


# ----- Catalog and listing -----

def test_unknown_product_is_locked(engine):
    decision = engine.access.get_access("user-1", "teleporter")
    assert decision.has_access is False
    assert decision.status == AccessStatus.LOCKED
    assert decision.reason == "unknown product"


def test_get_all_products_in_display_order(engine):
    assert [p.id for p in engine.access.get_all_products()] == [
        "ai_concierge",
        "snappro",
        "analytics",
        "full_suite",
    ]
    with_inactive = [p.id for p in engine.access.get_all_products(include_inactive=True)]
    assert with_inactive[-1] == "legacy_reports"


def test_get_all_access_covers_every_active_product(engine):
    engine.admin.grant_trial(ADMIN, "user-1", "snappro")
    decisions = engine.access.get_all_access("user-1")

    assert set(decisions) == {"ai_concierge", "snappro", "analytics", "full_suite"}
    assert decisions["snappro"].status == AccessStatus.TRIAL
    assert decisions["analytics"].status == AccessStatus.LOCKED


# ----- Bundles -----

def test_bundle_grant_unlocks_included_products(engine):
    engine.admin.grant_access(ADMIN, "user-1", "full_suite")

    decision = engine.access.get_access("user-1", "analytics")
    assert decision.has_access is True
    assert decision.status == AccessStatus.ADMIN_GRANTED
    assert decision.product_id == "analytics"
    assert decision.via_product_id == "full_suite"


def test_revoked_bundle_no_longer_unlocks(engine):
    engine.admin.grant_access(ADMIN, "user-1", "full_suite")
    engine.admin.revoke_access(ADMIN, "user-1", "full_suite")

    decision = engine.access.get_access("user-1", "snappro")
    assert decision.has_access is False
    assert decision.status == AccessStatus.LOCKED


def test_own_row_wins_when_it_grants_access(engine):
    engine.admin.grant_trial(ADMIN, "user-1", "snappro")
    engine.admin.grant_access(ADMIN, "user-1", "full_suite")

    decision = engine.access.get_access("user-1", "snappro")
    assert decision.status == AccessStatus.TRIAL
    assert decision.via_product_id is None


# ----- Feature helpers -----

def test_can_use_feature_limits_trials_to_trial_features(engine):
    engine.admin.grant_trial(ADMIN, "user-1", "snappro")
    assert engine.access.can_use_feature("user-1", "snappro", "single_photo") is True
    assert engine.access.can_use_feature("user-1", "snappro", "batch_enhance") is False
    assert engine.access.can_use_feature("user-1", "analytics", "dashboard_view") is False

    engine.admin.grant_access(ADMIN, "user-1", "snappro")
    assert engine.access.can_use_feature("user-1", "snappro", "batch_enhance") is True


def test_use_feature_meters_usage_trials_only(engine, store):
    engine.admin.grant_trial(ADMIN, "user-1", "snappro")
    engine.admin.grant_trial(ADMIN, "user-1", "analytics")
    engine.admin.grant_access(ADMIN, "user-1", "ai_concierge")

    metered = engine.access.use_feature("user-1", "snappro")
    assert metered.allowed is True
    assert metered.usage_count == 1
    assert store.get_entitlement("user-1", "snappro").usage_count == 1

    assert engine.access.use_feature("user-1", "analytics").allowed is True
    assert engine.access.use_feature("user-1", "ai_concierge").allowed is True
    assert store.get_entitlement("user-1", "ai_concierge").usage_count == 0


def test_use_feature_denied_without_access(engine):
    result = engine.access.use_feature("user-1", "snappro")
    assert result.allowed is False


def test_use_feature_stops_at_limit(engine):
    engine.admin.grant_trial(ADMIN, "user-1", "snappro", usage_limit=2)
    outcomes = [engine.access.use_feature("user-1", "snappro").allowed for _ in range(3)]
    assert outcomes == [True, True, False]


def test_decision_dict_for_denied_time_trial(engine, clock):
    engine.admin.grant_trial(ADMIN, "user-1", "analytics")
    payload = engine.access.get_access("user-1", "analytics", now=clock.now + timedelta(days=30)).to_dict()
    assert payload["has_access"] is False
    assert payload["status"] == "expired"
    assert payload["trial_days_remaining"] == 0
