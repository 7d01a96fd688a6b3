"""
Request-scoped dependencies for entitlement routes.

Identity comes from the authentication middleware via request.state
(user_id, roles); this package never authenticates on its own.
"""

import logging
from typing import Callable, List, Optional

from fastapi import Depends, HTTPException, Request, status

from product_access.admin import can_manage_entitlements
from product_access.engine import EntitlementEngine, build_sql_engine
from product_access.errors import AdminPermissionError

logger = logging.getLogger(__name__)

_engine: Optional[EntitlementEngine] = None


def get_engine() -> EntitlementEngine:
    """Process-wide engine built from settings on first use."""
    global _engine
    if _engine is None:
        _engine = build_sql_engine()
    return _engine


def get_user_id(request: Request) -> str:
    if getattr(request.state, "user_id", None):
        return request.state.user_id
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user context")


def get_actor_roles(request: Request) -> List[str]:
    if getattr(request.state, "roles", None):
        return list(request.state.roles)
    return []


def require_staff(request: Request) -> str:
    """Returns the acting staff id; 403 unless the caller holds an admin role."""
    actor_id = get_user_id(request)
    if not can_manage_entitlements(get_actor_roles(request)):
        logger.warning("Entitlement admin call rejected", extra={"actor_id": actor_id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=AdminPermissionError("Entitlement administration requires a staff role").to_dict(),
        )
    return actor_id


def require_product_access(product_id: str) -> Callable:
    """
    Dependency factory for protected feature routes.

    Use on a route: Depends(require_product_access("snappro"))
    Raises 402 with the evaluated status when the user has no access.
    """

    def check_access(
        user_id: str = Depends(get_user_id),
        engine: EntitlementEngine = Depends(get_engine),
    ) -> str:
        decision = engine.access.get_access(user_id, product_id)
        if not decision.has_access:
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail={
                    "error": "PRODUCT_ACCESS_DENIED",
                    "product_id": product_id,
                    "status": decision.status.value,
                    "reason": decision.reason,
                },
            )
        return user_id

    return check_access
