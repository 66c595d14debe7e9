"""Stock ledger service: the only writer of ingredient stock."""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

from inventory_deduction_service.errors import UnknownIngredientError
from inventory_deduction_service.models.inventory_models import StockMutation
from inventory_deduction_service.repositories.inventory_repositories import (
    IngredientStockRepository,
)
from inventory_deduction_service.services.recipe_resolver import IngredientDelta
from inventory_deduction_service.services.unit_conversion import convert

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class AppliedDelta:
    """One ingredient change as written to the ledger.

    Attributes:
        ingredient_id: Ingredient identifier
        delta: Signed change in the stock unit
        previous_quantity: Quantity before the write
        resulting_quantity: Quantity after the write
        unit: Stock unit
        reorder_threshold: Threshold at the time of the write
    """

    ingredient_id: str
    delta: Decimal
    previous_quantity: Decimal
    resulting_quantity: Decimal
    unit: str
    reorder_threshold: Decimal

    @property
    def is_negative(self) -> bool:
        """Whether the write took the ingredient below zero."""
        return self.resulting_quantity < 0


@dataclass
class NegativeStockWarning:
    """Stock went below zero. Reported to staff, never blocks the deduction."""

    ingredient_id: str
    resulting_quantity: Decimal
    unit: str


@dataclass
class AppliedDeltas:
    """Result of applying an order's deltas."""

    order_id: str
    applied: list[AppliedDelta] = field(default_factory=list)
    negative_stock_warnings: list[NegativeStockWarning] = field(default_factory=list)


@dataclass
class FulfillmentLine:
    """Projected effect of one delta on current stock.

    Attributes:
        ingredient_id: Ingredient identifier
        required: Amount needed, in the stock unit (or the delta's unit if untracked)
        available: Current quantity, None if the ingredient has no stock row
        unit: Unit of required and available
        shortfall: How much is missing, zero if enough is on hand
    """

    ingredient_id: str
    required: Decimal
    available: Decimal | None
    unit: str
    shortfall: Decimal

    @property
    def can_fulfill(self) -> bool:
        return self.available is not None and self.shortfall == 0


@dataclass
class FulfillmentPreview:
    """Projection of an order against current stock without writing anything."""

    lines: list[FulfillmentLine] = field(default_factory=list)

    @property
    def can_fulfill(self) -> bool:
        return all(line.can_fulfill for line in self.lines)


class StockLedger:
    """Applies ingredient deltas to stock and the inventory ledger atomically.

    Never retries: a lost compare-and-swap surfaces as ``LedgerConflictError``
    and the queue coordinator decides what happens next.
    """

    def __init__(
        self,
        stock_repository: IngredientStockRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the ledger.

        Args:
            stock_repository: Repository for stock rows and the atomic write
            clock: Source of the timestamp recorded on ledger rows
        """
        self.stock_repository = stock_repository
        self.clock = clock

    async def apply(self, order_id: str, deltas: Sequence[IngredientDelta]) -> AppliedDeltas:
        """Decrement stock for every delta and record ledger rows, all or nothing.

        Args:
            order_id: Order being deducted
            deltas: Positive consumption amounts, one per ingredient

        Returns:
            AppliedDeltas describing every row written

        Raises:
            UnknownIngredientError: If any delta references an untracked ingredient
            UnitConversionError: If a delta's unit cannot be expressed in the stock unit
            LedgerConflictError: If stock changed between read and write
            StorageUnavailableError: If the store could not be reached
        """
        if not deltas:
            return AppliedDeltas(order_id=order_id)

        stocks = await asyncio.to_thread(
            self.stock_repository.get_stocks, [delta.ingredient_id for delta in deltas]
        )

        missing = [delta.ingredient_id for delta in deltas if delta.ingredient_id not in stocks]
        if missing:
            raise UnknownIngredientError(missing, order_id=order_id)

        mutations: list[StockMutation] = []
        applied: list[AppliedDelta] = []

        for delta in deltas:
            stock = stocks[delta.ingredient_id]
            amount = convert(
                delta.quantity, delta.unit, stock.unit, ingredient_id=delta.ingredient_id
            )
            resulting = stock.quantity - amount

            mutations.append(
                StockMutation(
                    ingredient_id=stock.ingredient_id,
                    delta=-amount,
                    previous_quantity=stock.quantity,
                    resulting_quantity=resulting,
                    unit=stock.unit,
                    expected_version=stock.version,
                )
            )
            applied.append(
                AppliedDelta(
                    ingredient_id=stock.ingredient_id,
                    delta=-amount,
                    previous_quantity=stock.quantity,
                    resulting_quantity=resulting,
                    unit=stock.unit,
                    reorder_threshold=stock.reorder_threshold,
                )
            )

        await asyncio.to_thread(self.stock_repository.decrement_many, order_id, mutations, self.clock())

        warnings = [
            NegativeStockWarning(
                ingredient_id=item.ingredient_id,
                resulting_quantity=item.resulting_quantity,
                unit=item.unit,
            )
            for item in applied
            if item.is_negative
        ]
        for warning in warnings:
            logger.warning(
                f"Ingredient {warning.ingredient_id} is oversold: "
                f"{warning.resulting_quantity} {warning.unit} after order {order_id}"
            )

        return AppliedDeltas(order_id=order_id, applied=applied, negative_stock_warnings=warnings)

    async def preview(self, deltas: Sequence[IngredientDelta]) -> FulfillmentPreview:
        """Project deltas against current stock without writing.

        Args:
            deltas: Positive consumption amounts, one per ingredient

        Returns:
            FulfillmentPreview with one line per delta

        Raises:
            UnitConversionError: If a delta's unit cannot be expressed in the stock unit
            StorageUnavailableError: If the store could not be reached
        """
        stocks = await asyncio.to_thread(
            self.stock_repository.get_stocks, [delta.ingredient_id for delta in deltas]
        )
        lines: list[FulfillmentLine] = []

        for delta in deltas:
            stock = stocks.get(delta.ingredient_id)
            if stock is None:
                lines.append(
                    FulfillmentLine(
                        ingredient_id=delta.ingredient_id,
                        required=delta.quantity,
                        available=None,
                        unit=delta.unit,
                        shortfall=delta.quantity,
                    )
                )
                continue

            required = convert(
                delta.quantity, delta.unit, stock.unit, ingredient_id=delta.ingredient_id
            )
            lines.append(
                FulfillmentLine(
                    ingredient_id=delta.ingredient_id,
                    required=required,
                    available=stock.quantity,
                    unit=stock.unit,
                    shortfall=max(required - max(stock.quantity, Decimal("0")), Decimal("0")),
                )
            )

        return FulfillmentPreview(lines=lines)
