"""Low-stock alerting after a deduction."""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

from inventory_deduction_service.models.inventory_models import LowStockAlert
from inventory_deduction_service.notifiers.base_notifier import Notifier
from inventory_deduction_service.observability.metrics import record_low_stock_alert
from inventory_deduction_service.repositories.inventory_repositories import (
    LowStockAlertRepository,
)

logger = logging.getLogger(__name__)


class LowStockAlerter:
    """Raises one alert each time an ingredient crosses its reorder threshold.

    Purely observational: persistence and notification failures are logged and
    swallowed here so that a deduction that already happened is never reported
    as failed.
    """

    def __init__(
        self,
        alert_repository: LowStockAlertRepository,
        notifier: Notifier,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the alerter.

        Args:
            alert_repository: Repository for alert records
            notifier: Channel used to tell staff
            clock: Source of alert timestamps
        """
        self.alert_repository = alert_repository
        self.notifier = notifier
        self.clock = clock

    async def check_and_alert(
        self,
        ingredient_id: str,
        new_quantity: Decimal,
        threshold: Decimal,
        previous_quantity: Decimal,
        unit: str | None = None,
        order_id: str | None = None,
    ) -> LowStockAlert | None:
        """Raise an alert if this deduction moved the ingredient to or below its threshold.

        Args:
            ingredient_id: Ingredient that was deducted
            new_quantity: Quantity after the deduction
            threshold: Reorder threshold
            previous_quantity: Quantity before the deduction
            unit: Unit of the quantities
            order_id: Order that caused the deduction

        Returns:
            LowStockAlert if one was raised, None if no crossing happened
        """
        if not (previous_quantity > threshold >= new_quantity):
            return None

        alert = LowStockAlert(
            ingredient_id=ingredient_id,
            observed_quantity=new_quantity,
            previous_quantity=previous_quantity,
            threshold=threshold,
            unit=unit,
            order_id=order_id,
            created_at=self.clock(),
        )

        logger.warning(
            f"Ingredient {ingredient_id} crossed reorder threshold {threshold}: "
            f"{previous_quantity} -> {new_quantity}"
        )
        record_low_stock_alert(ingredient_id)

        if not await asyncio.to_thread(self.alert_repository.save_alert, alert):
            logger.error(f"Low-stock alert for {ingredient_id} was not persisted")

        try:
            delivered = await self.notifier.notify_low_stock(alert)
        except Exception as e:
            logger.error(f"Notifier {self.notifier.channel_name} raised on low-stock alert: {e}")
            delivered = False

        if not delivered:
            logger.error(f"Low-stock notification for {ingredient_id} was not delivered")

        return alert
