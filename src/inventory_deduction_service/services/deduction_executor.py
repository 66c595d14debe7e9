"""Deduction executor: the single code path that turns a paid order into stock changes."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from inventory_deduction_service.errors import DeductionError
from inventory_deduction_service.models.inventory_models import LowStockAlert
from inventory_deduction_service.models.order_models import OrderLine, parse_order_lines
from inventory_deduction_service.observability import traced
from inventory_deduction_service.observability.metrics import (
    record_deduction_completed,
    record_deduction_skipped,
    record_negative_stock,
)
from inventory_deduction_service.services.idempotency_guard import ClaimResult, IdempotencyGuard
from inventory_deduction_service.services.low_stock_alerter import LowStockAlerter
from inventory_deduction_service.services.recipe_resolver import (
    RecipeResolver,
    ResolutionWarning,
    ResolvedDeltas,
)
from inventory_deduction_service.services.stock_ledger import (
    AppliedDelta,
    FulfillmentPreview,
    NegativeStockWarning,
    StockLedger,
)

logger = logging.getLogger(__name__)


class DeductionStatus(str, Enum):
    """How an execute call ended."""

    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


@dataclass
class DeductionOutcome:
    """Result of executing a deduction for one order.

    Attributes:
        order_id: Order that was processed
        status: APPLIED if this call wrote the ledger, ALREADY_APPLIED if it was a no-op
        applied: Ledger rows written by this call
        warnings: Non-blocking resolution warnings (e.g. missing recipes)
        negative_stock: Ingredients this call took below zero
        alerts: Low-stock alerts raised by this call
    """

    order_id: str
    status: DeductionStatus
    applied: list[AppliedDelta] = field(default_factory=list)
    warnings: list[ResolutionWarning] = field(default_factory=list)
    negative_stock: list[NegativeStockWarning] = field(default_factory=list)
    alerts: list[LowStockAlert] = field(default_factory=list)


@dataclass
class OrderPreview:
    """Dry-run of an order: what it would consume and whether stock covers it."""

    resolved: ResolvedDeltas
    fulfillment: FulfillmentPreview


class DeductionExecutor:
    """Composes the resolver and ledger under the idempotency guard.

    The executor never touches job state and never retries. Errors propagate
    to the queue coordinator, which owns the job state machine.
    """

    def __init__(
        self,
        resolver: RecipeResolver,
        ledger: StockLedger,
        guard: IdempotencyGuard,
        alerter: LowStockAlerter,
    ) -> None:
        """Initialize the executor.

        Args:
            resolver: Turns order lines into ingredient deltas
            ledger: Applies deltas atomically
            guard: Detects orders that were already deducted
            alerter: Raises low-stock alerts after a write
        """
        self.resolver = resolver
        self.ledger = ledger
        self.guard = guard
        self.alerter = alerter

    @traced("deduction.execute")
    async def execute(
        self, order_id: str, order_lines: Sequence[OrderLine | dict[str, Any]]
    ) -> DeductionOutcome:
        """Deduct stock for a paid order exactly once.

        Steps:
        1. Idempotency guard (already deducted -> no-op success)
        2. Validate lines and resolve recipes into deltas
        3. Apply deltas to the stock ledger
        4. Check low-stock thresholds for every changed ingredient

        Args:
            order_id: Order identifier
            order_lines: Order lines, validated or raw

        Returns:
            DeductionOutcome describing what happened

        Raises:
            MalformedOrderError: If the order lines are structurally invalid
            DeductionError: Any other resolution or ledger failure, for the queue to handle
        """
        if await self.guard.try_claim(order_id) == ClaimResult.ALREADY_CLAIMED:
            record_deduction_skipped()
            return DeductionOutcome(order_id=order_id, status=DeductionStatus.ALREADY_APPLIED)

        try:
            lines = parse_order_lines(order_lines, order_id=order_id)
            resolved = await self.resolver.resolve(lines)
            result = await self.ledger.apply(order_id, resolved.deltas)
        except DeductionError as e:
            if e.order_id is None:
                e.order_id = order_id
            raise

        alerts: list[LowStockAlert] = []
        for item in result.applied:
            try:
                alert = await self.alerter.check_and_alert(
                    item.ingredient_id,
                    new_quantity=item.resulting_quantity,
                    threshold=item.reorder_threshold,
                    previous_quantity=item.previous_quantity,
                    unit=item.unit,
                    order_id=order_id,
                )
            except Exception as e:
                logger.error(f"Low-stock check failed for {item.ingredient_id}: {e}")
                continue
            if alert is not None:
                alerts.append(alert)

        for warning in result.negative_stock_warnings:
            record_negative_stock(warning.ingredient_id)

        record_deduction_completed(len(result.applied))
        logger.info(
            f"Deducted {len(result.applied)} ingredient(s) for order {order_id}"
            + (f", {len(resolved.missing_recipes)} item(s) without recipe" if resolved.is_partial else "")
        )

        return DeductionOutcome(
            order_id=order_id,
            status=DeductionStatus.APPLIED,
            applied=result.applied,
            warnings=resolved.warnings,
            negative_stock=result.negative_stock_warnings,
            alerts=alerts,
        )

    @traced("deduction.preview")
    async def preview(self, order_lines: Sequence[OrderLine | dict[str, Any]]) -> OrderPreview:
        """Resolve an order and project it against current stock without writing.

        Args:
            order_lines: Order lines, validated or raw

        Returns:
            OrderPreview with the resolved deltas and per-ingredient availability

        Raises:
            MalformedOrderError: If the order lines are structurally invalid
            DeductionError: If recipes or stock could not be read
        """
        lines = parse_order_lines(order_lines)
        resolved = await self.resolver.resolve(lines)
        fulfillment = await self.ledger.preview(resolved.deltas)
        return OrderPreview(resolved=resolved, fulfillment=fulfillment)
