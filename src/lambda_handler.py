"""AWS Lambda handler for API Gateway and EventBridge events.

This module provides a single Lambda entry point that handles:
1. API Gateway requests (via Mangum ASGI adapter for FastAPI)
2. EventBridge payment confirmed events (enqueue a deduction)
3. EventBridge scheduled events (run one queue sweep)

The handler automatically detects the event type and routes accordingly.
"""

import asyncio
import logging
import os
from dataclasses import asdict
from typing import Any

from mangum import Mangum

from inventory_deduction_service.errors import StorageUnavailableError
from inventory_deduction_service.handlers.event_handler import (
    PAYMENT_CONFIRMED_DETAIL_TYPE,
    PAYMENT_EVENT_SOURCE,
)
from lambda_dependencies import (
    get_event_handler,
    get_fastapi_app,
    get_queue_coordinator,
    initialize_lambda_environment,
)

SCHEDULE_SOURCE = "aws.events"
SCHEDULE_DETAIL_TYPE = "Scheduled Event"

if os.getenv("ENVIRONMENT") != "test":
    initialize_lambda_environment()

logger = logging.getLogger(__name__)

# Create FastAPI app and Mangum adapter (cached for warm starts, skip in test mode)
if os.getenv("ENVIRONMENT") != "test":
    app = get_fastapi_app()
    mangum_handler = Mangum(app, lifespan="off")
else:
    app = None  # type: ignore
    mangum_handler = None  # type: ignore


def is_eventbridge_event(event: dict[str, Any]) -> bool:
    """Determine if the event is from EventBridge.

    Args:
        event: The Lambda event payload

    Returns:
        True if this is an EventBridge event, False otherwise
    """
    return "source" in event and "detail-type" in event and "detail" in event


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Multi-purpose Lambda handler for API Gateway and EventBridge events.

    Routes incoming events to the appropriate handler:
    - Payment confirmed events -> PaymentEventHandler (enqueue)
    - Scheduled events -> QueueCoordinator.run_sweep
    - API Gateway requests -> FastAPI via Mangum

    Args:
        event: The Lambda event payload
        context: The Lambda context object

    Returns:
        Response dict with statusCode and body

    Raises:
        StorageUnavailableError: If a payment event could not be queued, so that
            Lambda retries the asynchronous invocation
    """
    logger.info(f"Received Lambda invocation, request_id: {context.aws_request_id}")

    try:
        if is_eventbridge_event(event):
            logger.info(
                f"Processing EventBridge event: {event.get('source')} - {event.get('detail-type')}"
            )
            return handle_eventbridge_event(event)

        logger.info("Processing API Gateway request via Mangum")
        result: dict[str, Any] = mangum_handler(event, context)
        return result

    except StorageUnavailableError:
        raise
    except Exception as e:
        logger.exception(f"Unhandled error in Lambda handler: {e}")
        return {
            "statusCode": 500,
            "body": f"Internal server error: {str(e)}",
        }


def handle_eventbridge_event(event: dict[str, Any]) -> dict[str, Any]:
    """Handle EventBridge payment and schedule events.

    Args:
        event: The EventBridge event payload

    Returns:
        Response dict with statusCode and body
    """
    source = event.get("source", "")
    detail_type = event.get("detail-type", "")

    if source == PAYMENT_EVENT_SOURCE and detail_type == PAYMENT_CONFIRMED_DETAIL_TYPE:
        event_handler = get_event_handler()
        response: dict[str, Any] = asyncio.run(event_handler.handle_eventbridge_event(event, None))
        return response

    if source == SCHEDULE_SOURCE and detail_type == SCHEDULE_DETAIL_TYPE:
        return handle_scheduled_sweep()

    logger.warning(f"Unsupported event type: {source}/{detail_type}")
    return {
        "statusCode": 400,
        "body": f"Unsupported event type: {source}/{detail_type}",
    }


def handle_scheduled_sweep() -> dict[str, Any]:
    """Run one deduction queue sweep for a scheduled invocation.

    Returns:
        Response dict with statusCode and the sweep counts as body
    """
    coordinator = get_queue_coordinator()
    result = asyncio.run(coordinator.run_sweep())

    logger.info(f"Scheduled sweep finished: {result}")
    return {
        "statusCode": 200,
        "body": asdict(result),
    }
