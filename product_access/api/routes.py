"""
Entitlement routes: gate checks and trial usage for the signed-in user,
product catalog, and staff administration.
Admin mutations invalidate the affected user's cached rows.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from product_access.api.dependencies import get_engine, get_user_id, require_staff
from product_access.engine import EntitlementEngine
from product_access.errors import (
    EntitlementNotFoundError,
    InvalidTrialConfigurationError,
    ProductNotFoundError,
    StoreUnavailableError,
)
from product_access.models import EntitlementStatus, Product, UserEntitlement

router = APIRouter(prefix="/entitlements", tags=["entitlements"])
products_router = APIRouter(prefix="/products", tags=["products"])
admin_router = APIRouter(prefix="/admin/entitlements", tags=["admin", "entitlements"])


class GrantAccessBody(BaseModel):
    user_id: str = Field(..., min_length=1, description="Target user")
    product_id: str = Field(..., min_length=1)
    status: EntitlementStatus = Field(EntitlementStatus.ADMIN_GRANTED, description="active or admin_granted")
    note: Optional[str] = None
    expires_at: Optional[datetime] = Field(None, description="Null for indefinite access")


class GrantTrialBody(BaseModel):
    user_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    trial_starts_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = Field(None, description="Time trials only")
    usage_limit: Optional[int] = Field(None, gt=0, description="Usage trials only")
    note: Optional[str] = None


class RevokeAccessBody(BaseModel):
    user_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)


def _product_dict(product: Product) -> dict:
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
    }


def _entitlement_dict(row: UserEntitlement) -> dict:
    return {
        "user_id": row.user_id,
        "product_id": row.product_id,
        "status": row.status.value,
        "usage_count": row.usage_count,
        "usage_limit": row.usage_limit,
        "trial_ends_at": row.trial_ends_at.isoformat() if row.trial_ends_at else None,
        "access_ends_at": row.access_ends_at.isoformat() if row.access_ends_at else None,
        "granted_by": row.granted_by,
        "note": row.note,
    }


def _admin_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (ProductNotFoundError, EntitlementNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.to_dict())
    if isinstance(exc, InvalidTrialConfigurationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict())
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_dict())
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


# -- signed-in user --------------------------------------------------------


@router.get("")
def list_my_access(
    user_id: str = Depends(get_user_id),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    decisions = engine.access.get_all_access(user_id)
    return {"user_id": user_id, "access": [d.to_dict() for d in decisions.values()]}


@router.get("/{product_id}")
def get_my_access(
    product_id: str,
    user_id: str = Depends(get_user_id),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    """Gate check. Store failures come back as a locked decision, not an error."""
    return engine.access.get_access(user_id, product_id).to_dict()


@router.post("/{product_id}/usage")
def increment_my_usage(
    product_id: str,
    user_id: str = Depends(get_user_id),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    try:
        result = engine.access.increment_usage(user_id, product_id)
    except InvalidTrialConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict()) from e
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict()) from e
    return result.to_dict()


@router.post("/refresh")
def refresh_my_access(
    user_id: str = Depends(get_user_id),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    try:
        rows = engine.access.refresh(user_id)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict()) from e
    return {"ok": True, "user_id": user_id, "entitlement_count": len(rows)}


@products_router.get("")
def list_products(
    include_inactive: bool = Query(False),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    try:
        products = engine.access.get_all_products(include_inactive=include_inactive)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict()) from e
    return {"products": [_product_dict(p) for p in products]}


# -- staff -----------------------------------------------------------------


@admin_router.get("")
def list_entitlements(
    include_users: bool = Query(True),
    actor_id: str = Depends(require_staff),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    try:
        rows = engine.admin.list_all_entitlements(include_users=include_users)
    except StoreUnavailableError as e:
        raise _admin_error(e) from e
    return {"entitlements": rows}


@admin_router.get("/actions")
def list_admin_actions_route(
    target_user_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    actor_id: str = Depends(require_staff),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    try:
        actions = engine.admin.list_admin_actions(target_user_id=target_user_id, limit=limit)
    except StoreUnavailableError as e:
        raise _admin_error(e) from e
    return {"actions": actions}


@admin_router.post("/grant")
def grant_access_route(
    body: GrantAccessBody,
    actor_id: str = Depends(require_staff),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    try:
        row = engine.admin.grant_access(
            actor_id,
            body.user_id,
            body.product_id,
            status=body.status,
            note=body.note,
            expires_at=body.expires_at,
        )
    except (ValueError, ProductNotFoundError, StoreUnavailableError) as e:
        raise _admin_error(e) from e
    return {"ok": True, "entitlement": _entitlement_dict(row)}


@admin_router.post("/trial")
def grant_trial_route(
    body: GrantTrialBody,
    actor_id: str = Depends(require_staff),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    try:
        row = engine.admin.grant_trial(
            actor_id,
            body.user_id,
            body.product_id,
            trial_starts_at=body.trial_starts_at,
            trial_ends_at=body.trial_ends_at,
            usage_limit=body.usage_limit,
            note=body.note,
        )
    except (ValueError, ProductNotFoundError, InvalidTrialConfigurationError, StoreUnavailableError) as e:
        raise _admin_error(e) from e
    return {"ok": True, "entitlement": _entitlement_dict(row)}


@admin_router.post("/revoke")
def revoke_access_route(
    body: RevokeAccessBody,
    actor_id: str = Depends(require_staff),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    try:
        row = engine.admin.revoke_access(actor_id, body.user_id, body.product_id)
    except (ValueError, EntitlementNotFoundError, StoreUnavailableError) as e:
        raise _admin_error(e) from e
    return {"ok": True, "entitlement": _entitlement_dict(row)}


@admin_router.post("/bulk-expire")
def bulk_expire_route(
    actor_id: str = Depends(require_staff),
    engine: EntitlementEngine = Depends(get_engine),
) -> dict:
    try:
        result = engine.admin.bulk_expire_stale_trials(actor_id)
    except StoreUnavailableError as e:
        raise _admin_error(e) from e
    return {"ok": True, **result.to_dict()}
