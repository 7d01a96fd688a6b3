"""
Audit logging for entitlement administration.

Every staff mutation writes an AdminAction row through the store and a
structured log line. A failed audit write never undoes the mutation; it is
reported on the ``audit.fallback`` logger with the full event payload.
"""

import logging
from typing import Any, Mapping, Optional

from product_access.errors import StoreUnavailableError
from product_access.models import AccessDecision, AdminAction, AdminActionType
from product_access.store.base import EntitlementStore

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit.fallback")


def emit_admin_action(
    store: EntitlementStore,
    *,
    admin_id: str,
    action_type: AdminActionType,
    target_user_id: Optional[str],
    product_id: Optional[str],
    details: Optional[Mapping[str, Any]] = None,
) -> Optional[AdminAction]:
    action = AdminAction(
        admin_id=admin_id,
        action_type=action_type,
        target_user_id=target_user_id,
        product_id=product_id,
        details=details or {},
    )
    logger.info(
        "Entitlement admin action",
        extra={
            "action": action.action_type.value,
            "admin_id": action.admin_id,
            "target_user_id": target_user_id,
            "product_id": product_id,
        },
    )
    try:
        store.record_admin_action(action)
    except StoreUnavailableError as e:
        fallback_logger.error(
            "Audit log write failed for entitlement admin action",
            extra={
                "action": action.action_type.value,
                "admin_id": action.admin_id,
                "target_user_id": target_user_id,
                "product_id": product_id,
                "details": dict(action.details),
                "error": str(e),
            },
        )
        return None
    return action


def log_access_denied(user_id: str, decision: AccessDecision) -> None:
    """Structured log for a denied gate check."""
    logger.info(
        "Product access denied",
        extra={
            "user_id": user_id,
            "product_id": decision.product_id,
            "status": decision.status.value,
            "reason": decision.reason,
        },
    )
