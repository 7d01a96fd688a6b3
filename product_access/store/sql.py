"""
SQLAlchemy-backed entitlement store (PostgreSQL in production, SQLite locally).

All SQLAlchemy failures are re-raised as StoreUnavailableError so callers
only deal with the entitlement error hierarchy.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from product_access.errors import StoreUnavailableError
from product_access.models import (
    AdminAction,
    EntitlementStatus,
    IncrementResult,
    Product,
    UserEntitlement,
    utc_now,
)
from product_access.store.tables import AdminActionRow, AppUserRow, ProductRow, UserEntitlementRow

logger = logging.getLogger(__name__)

_ENTITLEMENT_FIELDS = (
    "status",
    "source",
    "trial_started_at",
    "trial_ends_at",
    "usage_count",
    "usage_limit",
    "access_starts_at",
    "access_ends_at",
    "granted_by",
    "note",
    "updated_at",
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back; values are always written in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_model(row: UserEntitlementRow) -> UserEntitlement:
    return UserEntitlement(
        user_id=row.user_id,
        product_id=row.product_id,
        status=EntitlementStatus(row.status),
        source=row.source,
        trial_started_at=_as_utc(row.trial_started_at),
        trial_ends_at=_as_utc(row.trial_ends_at),
        usage_count=row.usage_count or 0,
        usage_limit=row.usage_limit,
        access_starts_at=_as_utc(row.access_starts_at),
        access_ends_at=_as_utc(row.access_ends_at),
        granted_by=row.granted_by,
        note=row.note,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _to_product(row: ProductRow) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        description=row.description or "",
        icon=row.icon or "",
        price_monthly=row.price_monthly,
        price_annual=row.price_annual,
        trial_type=row.trial_type or "none",
        trial_limit=row.trial_limit,
        is_active=bool(row.is_active),
        sort_order=row.sort_order or 0,
        trial_features=tuple(row.trial_features or ()),
        includes=tuple(row.includes or ()),
    )


class SqlEntitlementStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Entitlement store operation failed", extra={"operation": operation})
            raise StoreUnavailableError(operation, exc) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _insert(self, session: Session):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise NotImplementedError(f"upsert not supported for dialect {dialect}")

    # -- reads -------------------------------------------------------------

    def get_entitlements(self, user_id: str) -> List[UserEntitlement]:
        with self._transaction("get_entitlements") as session:
            rows = session.scalars(
                select(UserEntitlementRow).where(UserEntitlementRow.user_id == user_id)
            ).all()
            return [_to_model(r) for r in rows]

    def get_entitlement(self, user_id: str, product_id: str) -> Optional[UserEntitlement]:
        with self._transaction("get_entitlement") as session:
            row = session.scalars(
                select(UserEntitlementRow).where(
                    UserEntitlementRow.user_id == user_id,
                    UserEntitlementRow.product_id == product_id,
                )
            ).first()
            return _to_model(row) if row is not None else None

    def get_products(self) -> List[Product]:
        with self._transaction("get_products") as session:
            rows = session.scalars(select(ProductRow).order_by(ProductRow.sort_order)).all()
            return [_to_product(r) for r in rows]

    def list_all_entitlements(self) -> List[UserEntitlement]:
        with self._transaction("list_all_entitlements") as session:
            rows = session.scalars(
                select(UserEntitlementRow).order_by(UserEntitlementRow.user_id, UserEntitlementRow.product_id)
            ).all()
            return [_to_model(r) for r in rows]

    def list_all_users(self) -> List[dict]:
        with self._transaction("list_all_users") as session:
            rows = session.scalars(select(AppUserRow).order_by(AppUserRow.id)).all()
            return [{"id": r.id, "email": r.email, "full_name": r.full_name} for r in rows]

    # -- writes ------------------------------------------------------------

    def upsert_entitlement(self, row: UserEntitlement) -> UserEntitlement:
        now = utc_now()
        values = {name: getattr(row, name) for name in _ENTITLEMENT_FIELDS}
        values["status"] = row.status.value
        values["source"] = row.source.value if row.source is not None else None
        values["updated_at"] = row.updated_at or now

        with self._transaction("upsert_entitlement") as session:
            insert = self._insert(session)
            stmt = insert(UserEntitlementRow).values(
                user_id=row.user_id,
                product_id=row.product_id,
                created_at=row.created_at or now,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[UserEntitlementRow.user_id, UserEntitlementRow.product_id],
                set_=values,
            )
            session.execute(stmt)
            stored = session.scalars(
                select(UserEntitlementRow).where(
                    UserEntitlementRow.user_id == row.user_id,
                    UserEntitlementRow.product_id == row.product_id,
                )
            ).one()
            return _to_model(stored)

    def conditional_increment_usage(self, user_id: str, product_id: str, now: datetime) -> IncrementResult:
        stmt = (
            update(UserEntitlementRow)
            .where(
                and_(
                    UserEntitlementRow.user_id == user_id,
                    UserEntitlementRow.product_id == product_id,
                    UserEntitlementRow.status == EntitlementStatus.TRIAL.value,
                    UserEntitlementRow.usage_limit.is_not(None),
                    UserEntitlementRow.usage_count < UserEntitlementRow.usage_limit,
                    or_(
                        UserEntitlementRow.trial_ends_at.is_(None),
                        UserEntitlementRow.trial_ends_at >= now,
                    ),
                )
            )
            .values(usage_count=UserEntitlementRow.usage_count + 1, updated_at=now)
            .returning(UserEntitlementRow.usage_count, UserEntitlementRow.usage_limit)
            .execution_options(synchronize_session=False)
        )
        with self._transaction("conditional_increment_usage") as session:
            result = session.execute(stmt).first()
            if result is None:
                return IncrementResult(success=False)
            return IncrementResult(success=True, new_count=result[0], usage_limit=result[1])

    def compare_and_set_status(self, row: UserEntitlement, status: EntitlementStatus, now: datetime) -> bool:
        stmt = (
            update(UserEntitlementRow)
            .where(
                UserEntitlementRow.user_id == row.user_id,
                UserEntitlementRow.product_id == row.product_id,
                UserEntitlementRow.status == row.status.value,
                UserEntitlementRow.updated_at == row.updated_at,
            )
            .values(status=status.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        with self._transaction("compare_and_set_status") as session:
            result = session.execute(stmt)
            return result.rowcount == 1

    def record_admin_action(self, action: AdminAction) -> None:
        with self._transaction("record_admin_action") as session:
            session.add(
                AdminActionRow(
                    id=action.id,
                    admin_id=action.admin_id,
                    action_type=action.action_type.value,
                    target_user_id=action.target_user_id,
                    product_id=action.product_id,
                    details=dict(action.details),
                    created_at=action.created_at,
                )
            )

    def list_admin_actions(self, *, target_user_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        with self._transaction("list_admin_actions") as session:
            query = select(AdminActionRow).order_by(AdminActionRow.created_at.desc()).limit(limit)
            if target_user_id is not None:
                query = query.where(AdminActionRow.target_user_id == target_user_id)
            return [
                {
                    "id": r.id,
                    "admin_id": r.admin_id,
                    "action_type": r.action_type,
                    "target_user_id": r.target_user_id,
                    "product_id": r.product_id,
                    "details": r.details,
                    "created_at": _as_utc(r.created_at).isoformat(),
                }
                for r in session.scalars(query).all()
            ]

    # -- catalog seeding ---------------------------------------------------

    def upsert_products(self, products: List[Product]) -> None:
        """Write catalog entries (staff tooling / config seed)."""
        with self._transaction("upsert_products") as session:
            for product in products:
                session.merge(
                    ProductRow(
                        id=product.id,
                        name=product.name,
                        description=product.description,
                        icon=product.icon,
                        price_monthly=product.price_monthly,
                        price_annual=product.price_annual,
                        trial_type=product.trial_type.value,
                        trial_limit=product.trial_limit,
                        is_active=product.is_active,
                        sort_order=product.sort_order,
                        trial_features=list(product.trial_features),
                        includes=list(product.includes),
                    )
                )
