"""
Payment Reconciliation Worker.

Validates every order against its current payment and logs the inconsistencies.
Nothing is corrected automatically.
"""

import asyncio
import logging

from app.workers.celery_app import celery_app
from app.database import get_db_context

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def reconcile_payments(self):
    """
    Celery task producing the hourly reconciliation report.

    Returns the per-reason-code counts.
    """
    try:
        result = asyncio.run(_reconcile())
        logger.info(f"Payment reconciliation finished: {result}")
        return result
    except Exception as e:
        logger.error(f"Payment reconciliation failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


async def _reconcile():
    from app.services.reconciliation import ReconciliationService

    async with get_db_context() as db:
        report = await ReconciliationService(db).build_report()

    for order, validation in report.invalid:
        logger.warning(
            f"Order {order.id} payment inconsistent: {validation.reason_code.value} - {validation.details}",
            extra={"order_id": order.id, "outcome": validation.reason_code.value},
        )

    return {
        "checked": report.checked,
        "invalid": report.invalid_count,
        "counts": report.summary(),
    }
