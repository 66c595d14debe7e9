"""EventBridge event handler for payment confirmations."""

import logging
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from inventory_deduction_service.errors import StorageUnavailableError
from inventory_deduction_service.services.queue_coordinator import QueueCoordinator

logger = logging.getLogger(__name__)

PAYMENT_EVENT_SOURCE = "com.cafe.payments"
PAYMENT_CONFIRMED_DETAIL_TYPE = "PaymentConfirmed"


class PaymentConfirmedEvent(BaseModel):
    """Model for payment confirmed events from EventBridge.

    Attributes:
        order_id: The paid order
        order_lines: Paid line items, validated when the deduction runs
        paid_at: ISO 8601 timestamp of the payment, if provided
    """

    order_id: str = Field(..., min_length=1, validation_alias=AliasChoices("order_id", "orderId"))
    order_lines: list[Any] = Field(
        ..., validation_alias=AliasChoices("order_lines", "orderLines", "items")
    )
    paid_at: str | None = Field(None, validation_alias=AliasChoices("paid_at", "paidAt"))

    @field_validator("order_id", mode="before")
    @classmethod
    def coerce_order_id(cls, v: Any) -> Any:
        """Accept numeric order ids from the POS."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


def parse_eventbridge_event(event: dict[str, Any]) -> PaymentConfirmedEvent | None:
    """Parse an EventBridge event into a PaymentConfirmedEvent.

    Args:
        event: Raw EventBridge event dictionary

    Returns:
        PaymentConfirmedEvent if parsing succeeds, None otherwise
    """
    try:
        detail = event.get("detail", {})
        return PaymentConfirmedEvent.model_validate(detail)
    except (ValidationError, TypeError) as e:
        logger.error(f"Failed to parse EventBridge event: {e}")  # pragma: no cover
        return None


class PaymentEventHandler:
    """Turns payment confirmations into queued deduction jobs.

    Duplicate deliveries (webhook retries, staff re-sends, repair scripts) are
    expected and harmless: enqueue is idempotent per order.
    """

    def __init__(self, queue_coordinator: QueueCoordinator) -> None:
        """Initialize the event handler.

        Args:
            queue_coordinator: Coordinator owning the deduction queue
        """
        self.queue_coordinator = queue_coordinator

    async def handle_payment_confirmed(self, event: PaymentConfirmedEvent) -> bool:
        """Queue the deduction for a paid order.

        Args:
            event: The payment confirmed event

        Returns:
            True if a new job was queued, False if one already existed
        """
        logger.info(f"Payment confirmed for order {event.order_id} ({len(event.order_lines)} line(s))")
        return await self.queue_coordinator.enqueue(event.order_id, event.order_lines)

    async def handle_eventbridge_event(
        self, event: dict[str, Any], _context: Any
    ) -> dict[str, Any]:
        """Lambda handler for EventBridge payment events.

        Args:
            event: EventBridge event dictionary
            _context: Lambda context object (unused)

        Returns:
            Dictionary with statusCode and body for Lambda response

        Raises:
            StorageUnavailableError: If the job could not be stored, so that the
                asynchronous invocation is retried by Lambda
        """
        payment_event = parse_eventbridge_event(event)
        if not payment_event:
            logger.error("Received invalid payment event format")  # pragma: no cover
            return {
                "statusCode": 400,
                "body": "Invalid event format",
            }

        try:
            created = await self.handle_payment_confirmed(payment_event)
        except StorageUnavailableError as e:
            logger.error(f"Failed to queue deduction for order {payment_event.order_id}: {e}")
            raise

        if created:
            return {
                "statusCode": 200,
                "body": f"Queued deduction for order {payment_event.order_id}",
            }
        return {
            "statusCode": 200,
            "body": f"Deduction for order {payment_event.order_id} already queued",
        }
