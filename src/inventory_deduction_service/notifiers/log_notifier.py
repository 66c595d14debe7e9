"""Notifier that writes staff signals to the structured log.

Used when no webhook is configured; the JSON log pipeline turns these lines
into dashboard entries.
"""

import logging

from inventory_deduction_service.errors import DeductionError
from inventory_deduction_service.models.inventory_models import LowStockAlert
from inventory_deduction_service.models.job_models import DeductionJob
from inventory_deduction_service.notifiers.base_notifier import Notifier

logger = logging.getLogger(__name__)


class LogNotifier(Notifier):
    """Emits low-stock and manual-review signals as warning log records."""

    def __init__(self) -> None:
        super().__init__("log")

    async def notify_low_stock(self, alert: LowStockAlert) -> bool:
        logger.warning(
            f"Low stock: {alert.ingredient_id} at {alert.observed_quantity} "
            f"(threshold {alert.threshold})",
            extra={
                "event": "low_stock",
                "ingredient_id": alert.ingredient_id,
                "observed_quantity": str(alert.observed_quantity),
                "threshold": str(alert.threshold),
                "unit": alert.unit,
                "order_id": alert.order_id,
                "critical": alert.is_critical,
            },
        )
        return True

    async def notify_manual_review(self, job: DeductionJob, error: DeductionError) -> bool:
        logger.error(
            f"Deduction for order {job.order_id} needs manual review: {error.message}",
            extra={
                "event": "manual_review",
                "order_id": job.order_id,
                "attempts": job.attempts,
                "error_code": error.error_code,
            },
        )
        return True
