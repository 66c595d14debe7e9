"""Main application entry point for the inventory deduction service.

This module provides the FastAPI application factory and configuration for
running the service as a long-lived process, with the deduction sweep loop
running alongside the admin API.
"""

import logging
import os

from fastapi import FastAPI

from inventory_deduction_service.handlers.api_handler import create_app
from inventory_deduction_service.observability import configure_logging, setup_observability
from lambda_dependencies import (
    get_api_keys,
    get_deduction_executor,
    get_queue_coordinator,
    get_report_service,
    get_table_names,
)

logger = logging.getLogger(__name__)


def create_application() -> FastAPI:
    """Create and configure the FastAPI application with all dependencies.

    This factory function:
    1. Configures logging
    2. Builds repositories, services and the queue coordinator
    3. Creates the FastAPI app (starting the sweep loop unless disabled)
    4. Sets up observability

    Returns:
        Configured FastAPI application instance

    Raises:
        ValueError: If the recipe catalog is not configured
    """
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    logger.info("Initializing inventory deduction service...")

    tables = get_table_names()
    logger.info(
        f"Tables configured - stock: {tables['stock']}, transactions: {tables['transactions']}, "
        f"jobs: {tables['jobs']}, alerts: {tables['alerts']}"
    )

    run_worker = os.getenv("ENABLE_QUEUE_WORKER", "true").lower() == "true"
    if not run_worker:
        logger.warning("ENABLE_QUEUE_WORKER is off - jobs will only run on manual or scheduled sweeps")

    app = create_app(
        queue_coordinator=get_queue_coordinator(),
        executor=get_deduction_executor(),
        report_service=get_report_service(),
        api_keys=get_api_keys(),
        run_worker=run_worker,
    )

    setup_observability(app)

    logger.info("Inventory deduction service initialized successfully")
    return app


# Create the FastAPI application instance (only when not in test mode)
# This prevents the app from being created during test collection
if os.getenv("ENVIRONMENT") != "test":  # noqa: SIM108
    app = create_application()
else:
    app = FastAPI()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8001"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting server on {host}:{port}")
    logger.info(f"API documentation available at http://{host}:{port}/docs")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
