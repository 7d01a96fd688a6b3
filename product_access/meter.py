"""
Trial usage metering.

increment_usage() debits one use from a usage-metered trial. The check and
the increment are a single conditional update in the store, so two requests
racing on the same (user, product) can never both take the last use and the
counter can never pass usage_limit. Only when the update matches nothing is
the row read back, to tell the caller why.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from product_access.cache import EntitlementCache
from product_access.errors import InvalidTrialConfigurationError
from product_access.models import EntitlementStatus, UsageResult, utc_now
from product_access.store.base import EntitlementStore

logger = logging.getLogger(__name__)


class UsageMeter:
    def __init__(
        self,
        store: EntitlementStore,
        *,
        cache: Optional[EntitlementCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._cache = cache
        self._clock = clock

    def increment_usage(self, user_id: str, product_id: str, *, now: Optional[datetime] = None) -> UsageResult:
        """
        Consume one trial use.

        Returns allowed=False (never raises) when there is no trial row, the
        trial is over, or the limit is already reached. Raises
        InvalidTrialConfigurationError when the trial is not usage-metered.
        """
        user_id = str(user_id).strip()
        product_id = str(product_id).strip()
        if not user_id or not product_id:
            raise ValueError("user_id and product_id are required")

        now = now or self._clock()
        result = self._store.conditional_increment_usage(user_id, product_id, now)

        if result.success:
            if self._cache is not None:
                self._cache.invalidate(user_id)
            logger.info(
                "Trial use consumed",
                extra={
                    "user_id": user_id,
                    "product_id": product_id,
                    "usage_count": result.new_count,
                    "usage_limit": result.usage_limit,
                },
            )
            return UsageResult(allowed=True, usage_count=result.new_count, usage_limit=result.usage_limit)

        row = self._store.get_entitlement(user_id, product_id)
        if row is None or row.status is not EntitlementStatus.TRIAL:
            logger.info(
                "Trial use refused: no trial entitlement",
                extra={
                    "user_id": user_id,
                    "product_id": product_id,
                    "status": row.status.value if row is not None else None,
                },
            )
            return UsageResult(allowed=False)

        if row.usage_limit is None:
            raise InvalidTrialConfigurationError(
                "usage metering requested for a trial without a usage limit",
                product_id=product_id,
                field="usage_limit",
            )

        logger.info(
            "Trial use refused: limit reached or trial ended",
            extra={
                "user_id": user_id,
                "product_id": product_id,
                "usage_count": row.usage_count,
                "usage_limit": row.usage_limit,
            },
        )
        return UsageResult(allowed=False, usage_count=row.usage_count, usage_limit=row.usage_limit)
