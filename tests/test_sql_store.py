"""
SqlEntitlementStore against a file-backed SQLite database.

A file (not :memory:) so that worker threads share the same database through
the connection pool.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from product_access.config import Settings
from product_access.db import create_db_engine, create_schema, create_session_factory
from product_access.engine import build_engine
from product_access.errors import StoreUnavailableError
from product_access.models import (
    AccessStatus,
    AdminAction,
    AdminActionType,
    EntitlementSource,
    EntitlementStatus,
    UserEntitlement,
)
from product_access.store.base import EntitlementStore
from product_access.store.sql import SqlEntitlementStore

NOW = datetime(2026, 6, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_engine(tmp_path):
    engine = create_db_engine(Settings(), url=f"sqlite:///{tmp_path / 'entitlements.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_store(db_engine, products):
    store = SqlEntitlementStore(create_session_factory(db_engine))
    store.upsert_products(list(products.values()))
    return store


def _usage_trial(limit=5, **fields):
    return UserEntitlement(
        user_id="user-1",
        product_id="snappro",
        status=EntitlementStatus.TRIAL,
        source=EntitlementSource.TRIAL_GRANT,
        usage_limit=limit,
        updated_at=NOW,
        **fields,
    )


def test_satisfies_store_protocol(sql_store):
    assert isinstance(sql_store, EntitlementStore)


def test_products_round_trip(sql_store):
    products = {p.id: p for p in sql_store.get_products()}
    assert products["full_suite"].includes == ("snappro", "analytics", "ai_concierge")
    assert products["snappro"].trial_features == ("single_photo", "basic_enhance")
    assert products["legacy_reports"].is_active is False


def test_upsert_inserts_then_updates_one_row(sql_store):
    first = sql_store.upsert_entitlement(_usage_trial(trial_ends_at=NOW + timedelta(days=3)))
    assert first.trial_ends_at == NOW + timedelta(days=3)
    assert first.trial_ends_at.tzinfo is not None
    assert first.created_at is not None

    second = sql_store.upsert_entitlement(
        UserEntitlement(
            user_id="user-1",
            product_id="snappro",
            status=EntitlementStatus.ADMIN_GRANTED,
            granted_by="staff-1",
            updated_at=NOW + timedelta(hours=1),
        )
    )
    assert second.status == EntitlementStatus.ADMIN_GRANTED
    assert second.usage_limit is None
    assert second.trial_ends_at is None
    assert second.created_at == first.created_at
    assert len(sql_store.list_all_entitlements()) == 1
    assert sql_store.get_entitlements("user-1") == [second]
    assert sql_store.get_entitlement("user-2", "snappro") is None


def test_conditional_increment_stops_at_limit(sql_store):
    sql_store.upsert_entitlement(_usage_trial(limit=2))

    first = sql_store.conditional_increment_usage("user-1", "snappro", NOW)
    second = sql_store.conditional_increment_usage("user-1", "snappro", NOW)
    third = sql_store.conditional_increment_usage("user-1", "snappro", NOW)

    assert (first.success, first.new_count, first.usage_limit) == (True, 1, 2)
    assert (second.success, second.new_count) == (True, 2)
    assert third.success is False
    assert sql_store.get_entitlement("user-1", "snappro").usage_count == 2


def test_conditional_increment_respects_trial_window(sql_store):
    sql_store.upsert_entitlement(_usage_trial(trial_ends_at=NOW))

    assert sql_store.conditional_increment_usage("user-1", "snappro", NOW).success is True
    late = sql_store.conditional_increment_usage("user-1", "snappro", NOW + timedelta(seconds=1))
    assert late.success is False


def test_conditional_increment_ignores_non_trial_rows(sql_store):
    sql_store.upsert_entitlement(
        UserEntitlement(user_id="user-1", product_id="snappro", status=EntitlementStatus.ACTIVE, usage_limit=5)
    )
    assert sql_store.conditional_increment_usage("user-1", "snappro", NOW).success is False
    assert sql_store.conditional_increment_usage("nobody", "snappro", NOW).success is False


def test_compare_and_set_status(sql_store):
    stored = sql_store.upsert_entitlement(_usage_trial())

    assert sql_store.compare_and_set_status(stored, EntitlementStatus.EXPIRED, NOW + timedelta(days=1)) is True
    assert sql_store.get_entitlement("user-1", "snappro").status == EntitlementStatus.EXPIRED
    # second attempt with the stale snapshot no longer matches
    assert sql_store.compare_and_set_status(stored, EntitlementStatus.EXPIRED, NOW + timedelta(days=2)) is False


def test_admin_actions_recorded(sql_store):
    sql_store.record_admin_action(
        AdminAction(
            admin_id="staff-1",
            action_type=AdminActionType.GRANT_TRIAL,
            target_user_id="user-1",
            product_id="snappro",
            details={"usage_limit": 10},
        )
    )
    actions = sql_store.list_admin_actions(target_user_id="user-1")
    assert len(actions) == 1
    assert actions[0]["action_type"] == "grant_trial"
    assert actions[0]["details"] == {"usage_limit": 10}
    assert sql_store.list_admin_actions(target_user_id="someone-else") == []


def test_sqlalchemy_errors_become_store_unavailable():
    session = MagicMock()
    session.scalars.side_effect = OperationalError("SELECT 1", {}, Exception("database is locked"))
    store = SqlEntitlementStore(MagicMock(return_value=session))

    with pytest.raises(StoreUnavailableError) as exc_info:
        store.get_entitlements("user-1")
    assert exc_info.value.operation == "get_entitlements"
    session.rollback.assert_called_once()
    session.close.assert_called_once()


def test_concurrent_increments_on_sqlite(sql_store):
    sql_store.upsert_entitlement(_usage_trial(limit=5))
    workers = 12
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def use_once():
        barrier.wait()
        result = sql_store.conditional_increment_usage("user-1", "snappro", NOW)
        with lock:
            outcomes.append(result.success)

    threads = [threading.Thread(target=use_once) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(True) == 5
    assert sql_store.get_entitlement("user-1", "snappro").usage_count == 5


def test_full_flow_against_sql_store(sql_store, clock):
    engine = build_engine(sql_store, settings=Settings(), clock=clock)
    try:
        engine.admin.grant_trial("staff-1", "user-1", "snappro", usage_limit=2)
        assert engine.access.increment_usage("user-1", "snappro").allowed is True
        assert engine.access.increment_usage("user-1", "snappro").allowed is True
        assert engine.access.increment_usage("user-1", "snappro").allowed is False
        assert engine.access.get_access("user-1", "snappro").reason == "trial uses exhausted"

        clock.advance(minutes=5)
        result = engine.admin.bulk_expire_stale_trials("staff-1")
        assert result.expired == 1
        assert sql_store.get_entitlement("user-1", "snappro").status == EntitlementStatus.EXPIRED

        engine.admin.grant_access("staff-1", "user-1", "full_suite")
        decision = engine.access.get_access("user-1", "analytics")
        assert decision.status == AccessStatus.ADMIN_GRANTED
        assert decision.via_product_id == "full_suite"

        types = [a["action_type"] for a in sql_store.list_admin_actions(target_user_id="user-1")]
        assert sorted(types) == ["expire_trial", "grant_access", "grant_trial"]
    finally:
        engine.close()
