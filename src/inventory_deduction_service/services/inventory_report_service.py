"""Read-only inventory reporting for the admin dashboard."""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal

from inventory_deduction_service.models.inventory_models import (
    IngredientStock,
    InventoryTransaction,
    LowStockAlert,
)
from inventory_deduction_service.repositories.inventory_repositories import (
    IngredientStockRepository,
    InventoryTransactionRepository,
    LowStockAlertRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class LowStockItem:
    """An ingredient at or below its reorder threshold.

    Attributes:
        ingredient_id: Ingredient identifier
        name: Display name, if known
        quantity: Current quantity
        reorder_threshold: Reorder level
        unit: Stock unit
        critical: Whether the ingredient is depleted or oversold
    """

    ingredient_id: str
    name: str | None
    quantity: Decimal
    reorder_threshold: Decimal
    unit: str
    critical: bool

    @classmethod
    def from_stock(cls, stock: IngredientStock) -> "LowStockItem":
        return cls(
            ingredient_id=stock.ingredient_id,
            name=stock.name,
            quantity=stock.quantity,
            reorder_threshold=stock.reorder_threshold,
            unit=stock.unit,
            critical=stock.quantity <= 0,
        )


class InventoryReportService:
    """Service for the inventory views of the admin dashboard.

    This service reads the ledger, stock and alert tables; it never writes.
    """

    def __init__(
        self,
        stock_repository: IngredientStockRepository,
        transaction_repository: InventoryTransactionRepository,
        alert_repository: LowStockAlertRepository,
    ) -> None:
        """Initialize the InventoryReportService.

        Args:
            stock_repository: Repository for ingredient stock
            transaction_repository: Repository for ledger rows
            alert_repository: Repository for low-stock alerts
        """
        self.stock_repository = stock_repository
        self.transaction_repository = transaction_repository
        self.alert_repository = alert_repository

    async def get_order_usage(self, order_id: str) -> list[InventoryTransaction]:
        """Get the ingredients an order consumed.

        Args:
            order_id: The order ID

        Returns:
            List of ledger rows for the order, empty list if none found
        """
        rows = await asyncio.to_thread(self.transaction_repository.list_for_order, order_id)
        return sorted(
            rows,
            key=lambda row: row.ingredient_id,
        )

    async def get_ingredient_history(
        self, ingredient_id: str, limit: int = 50
    ) -> list[InventoryTransaction]:
        """Get recent ledger rows for an ingredient, newest first."""
        return await asyncio.to_thread(
            self.transaction_repository.list_for_ingredient, ingredient_id, limit=limit
        )

    async def list_low_stock(self) -> list[LowStockItem]:
        """List ingredients at or below their reorder threshold, critical ones first.

        Returns:
            List of LowStockItem, empty list if stock is healthy
        """
        stocks = await asyncio.to_thread(self.stock_repository.list_low_stock)
        items = [LowStockItem.from_stock(stock) for stock in stocks]
        return sorted(items, key=lambda item: (not item.critical, item.ingredient_id))

    async def list_alerts(
        self, ingredient_id: str | None = None, limit: int = 50
    ) -> list[LowStockAlert]:
        """List recent low-stock alerts, optionally for one ingredient.

        Args:
            ingredient_id: Optional ingredient to filter by
            limit: Maximum number of alerts

        Returns:
            List of alerts, newest first
        """
        if ingredient_id:
            return await asyncio.to_thread(
                self.alert_repository.list_for_ingredient, ingredient_id, limit=limit
            )
        return await asyncio.to_thread(self.alert_repository.list_recent, limit=limit)
