from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from product_access.engine import EntitlementEngine, build_sql_engine
from product_access.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system:trial-expiry-job"


@dataclass
class TrialExpiryStats:
    started_at: str
    completed_at: Optional[str] = None
    trials_scanned: int = 0
    trials_expired: int = 0
    trials_skipped: int = 0
    errors: int = 0


def run_trial_expiry_cycle(
    engine: Optional[EntitlementEngine] = None,
    *,
    actor_id: str = SYSTEM_ACTOR_ID,
) -> TrialExpiryStats:
    """Background reconciliation job.

    Responsibilities:
    - rewrite stored status of trials that have run out to ``expired``
    - leave access checks untouched; they derive expiry on every read
    """

    engine = engine or build_sql_engine()
    stats = TrialExpiryStats(started_at=datetime.now(timezone.utc).isoformat())

    try:
        result = engine.admin.bulk_expire_stale_trials(actor_id)
        stats.trials_scanned = result.scanned
        stats.trials_expired = result.expired
        stats.trials_skipped = result.skipped
    except StoreUnavailableError:
        logger.exception("Trial expiry cycle failed")
        stats.errors += 1

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info("Trial expiry cycle completed", extra=stats.__dict__)
    return stats


def run_forever(interval_seconds: int = 300) -> None:
    engine = build_sql_engine()
    while True:
        run_trial_expiry_cycle(engine)
        time.sleep(interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_forever()
