"""Shared dependency factory for Lambda handlers.

This module provides cached dependency initialization to optimize Lambda cold starts.
Dependencies are created once and reused across invocations within the same Lambda container.
"""

import logging
import os
from typing import Any

import boto3
from fastapi import FastAPI

from inventory_deduction_service.handlers.api_handler import create_app
from inventory_deduction_service.handlers.event_handler import PaymentEventHandler
from inventory_deduction_service.notifiers.base_notifier import Notifier
from inventory_deduction_service.notifiers.log_notifier import LogNotifier
from inventory_deduction_service.notifiers.webhook_notifier import WebhookNotifier
from inventory_deduction_service.observability import configure_logging, setup_observability
from inventory_deduction_service.repositories.inventory_repositories import (
    IngredientStockRepository,
    InventoryTransactionRepository,
    LowStockAlertRepository,
)
from inventory_deduction_service.repositories.job_repository import DeductionJobRepository
from inventory_deduction_service.services.deduction_executor import DeductionExecutor
from inventory_deduction_service.services.idempotency_guard import IdempotencyGuard
from inventory_deduction_service.services.inventory_report_service import InventoryReportService
from inventory_deduction_service.services.low_stock_alerter import LowStockAlerter
from inventory_deduction_service.services.queue_coordinator import QueueCoordinator
from inventory_deduction_service.services.recipe_catalog_client import RecipeCatalogClient
from inventory_deduction_service.services.recipe_resolver import RecipeResolver
from inventory_deduction_service.services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)

# Module-level caches for Lambda container reuse
_dynamodb_resource: Any | None = None
_notifier: Notifier | None = None
_executor: DeductionExecutor | None = None
_queue_coordinator: QueueCoordinator | None = None
_report_service: InventoryReportService | None = None
_event_handler: PaymentEventHandler | None = None
_fastapi_app: FastAPI | None = None


def get_table_names() -> dict[str, str]:
    """Read DynamoDB table names from the environment.

    Returns:
        Dictionary with stock, transactions, jobs and alerts table names
    """
    return {
        "stock": os.getenv("DYNAMODB_STOCK_TABLE", "cafe-ingredient-stock"),
        "transactions": os.getenv("DYNAMODB_TRANSACTIONS_TABLE", "cafe-inventory-transactions"),
        "jobs": os.getenv("DYNAMODB_JOBS_TABLE", "cafe-deduction-jobs"),
        "alerts": os.getenv("DYNAMODB_ALERTS_TABLE", "cafe-low-stock-alerts"),
    }


def get_api_keys() -> list[str]:
    """Read admin API keys from ADMIN_API_KEY (comma-separated)."""
    api_keys_str = os.getenv("ADMIN_API_KEY", "")
    api_keys = [key.strip() for key in api_keys_str.split(",") if key.strip()]

    if not api_keys:
        logger.warning("No ADMIN_API_KEY configured - using development key")
        api_keys = ["dummy-key-for-development"]

    return api_keys


def get_dynamodb_resource() -> Any:
    """Create or retrieve cached DynamoDB resource.

    Returns:
        Boto3 DynamoDB resource configured for environment
    """
    global _dynamodb_resource

    if _dynamodb_resource is not None:
        return _dynamodb_resource

    endpoint_url = os.getenv("DYNAMODB_ENDPOINT")
    region = os.getenv("AWS_REGION", "us-east-1")

    if endpoint_url:
        logger.info(f"Using local DynamoDB at {endpoint_url}")
        _dynamodb_resource = boto3.resource(
            "dynamodb",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )
    else:
        logger.info(f"Using AWS DynamoDB in region {region}")
        _dynamodb_resource = boto3.resource("dynamodb", region_name=region)

    return _dynamodb_resource


def get_notifier() -> Notifier:
    """Create or retrieve the cached staff notifier.

    Uses the webhook notifier when NOTIFY_WEBHOOK_URL is set, the log notifier otherwise.
    """
    global _notifier

    if _notifier is not None:
        return _notifier

    webhook_url = os.getenv("NOTIFY_WEBHOOK_URL")
    if webhook_url:
        _notifier = WebhookNotifier(webhook_url=webhook_url, token=os.getenv("NOTIFY_WEBHOOK_TOKEN"))
        logger.info("Webhook notifier configured")
    else:
        _notifier = LogNotifier()
        logger.info("No NOTIFY_WEBHOOK_URL configured - notifications go to the log")

    return _notifier


def get_deduction_executor() -> DeductionExecutor:
    """Create or retrieve cached deduction executor.

    Returns:
        Configured DeductionExecutor instance

    Raises:
        ValueError: If the recipe catalog is not configured
    """
    global _executor

    if _executor is not None:
        return _executor

    dynamodb_resource = get_dynamodb_resource()
    tables = get_table_names()

    catalog_url = os.getenv("RECIPE_CATALOG_BASE_URL")
    catalog_api_key = os.getenv("RECIPE_CATALOG_API_KEY")

    if not catalog_url or not catalog_api_key:
        raise ValueError(
            "RECIPE_CATALOG_BASE_URL and RECIPE_CATALOG_API_KEY must be set in environment"
        )

    stock_repository = IngredientStockRepository(
        dynamodb_resource=dynamodb_resource,
        table_name=tables["stock"],
        transactions_table_name=tables["transactions"],
    )

    _executor = DeductionExecutor(
        resolver=RecipeResolver(RecipeCatalogClient(base_url=catalog_url, api_key=catalog_api_key)),
        ledger=StockLedger(stock_repository),
        guard=IdempotencyGuard(
            transaction_repository=InventoryTransactionRepository(
                dynamodb_resource=dynamodb_resource, table_name=tables["transactions"]
            ),
            job_repository=DeductionJobRepository(
                dynamodb_resource=dynamodb_resource, table_name=tables["jobs"]
            ),
        ),
        alerter=LowStockAlerter(
            alert_repository=LowStockAlertRepository(
                dynamodb_resource=dynamodb_resource, table_name=tables["alerts"]
            ),
            notifier=get_notifier(),
        ),
    )

    logger.info("Deduction executor initialized")
    return _executor


def get_queue_coordinator() -> QueueCoordinator:
    """Create or retrieve cached queue coordinator.

    Returns:
        Configured QueueCoordinator instance
    """
    global _queue_coordinator

    if _queue_coordinator is not None:
        return _queue_coordinator

    _queue_coordinator = QueueCoordinator(
        job_repository=DeductionJobRepository(
            dynamodb_resource=get_dynamodb_resource(), table_name=get_table_names()["jobs"]
        ),
        executor=get_deduction_executor(),
        notifier=get_notifier(),
        max_attempts=int(os.getenv("DEDUCTION_MAX_ATTEMPTS", "3")),
        sweep_interval_seconds=float(os.getenv("DEDUCTION_SWEEP_INTERVAL_SECONDS", "10")),
        stale_lock_seconds=float(os.getenv("DEDUCTION_STALE_LOCK_SECONDS", "300")),
        batch_size=int(os.getenv("DEDUCTION_SWEEP_BATCH_SIZE", "25")),
    )

    logger.info("Queue coordinator initialized")
    return _queue_coordinator


def get_report_service() -> InventoryReportService:
    """Create or retrieve cached inventory report service.

    Returns:
        Configured InventoryReportService instance
    """
    global _report_service

    if _report_service is not None:
        return _report_service

    dynamodb_resource = get_dynamodb_resource()
    tables = get_table_names()

    _report_service = InventoryReportService(
        stock_repository=IngredientStockRepository(
            dynamodb_resource=dynamodb_resource,
            table_name=tables["stock"],
            transactions_table_name=tables["transactions"],
        ),
        transaction_repository=InventoryTransactionRepository(
            dynamodb_resource=dynamodb_resource, table_name=tables["transactions"]
        ),
        alert_repository=LowStockAlertRepository(
            dynamodb_resource=dynamodb_resource, table_name=tables["alerts"]
        ),
    )

    logger.info("Inventory report service initialized")
    return _report_service


def get_event_handler() -> PaymentEventHandler:
    """Create or retrieve cached payment event handler.

    Returns:
        Configured PaymentEventHandler instance
    """
    global _event_handler

    if _event_handler is not None:
        return _event_handler

    _event_handler = PaymentEventHandler(queue_coordinator=get_queue_coordinator())

    logger.info("Event handler initialized")
    return _event_handler


def get_fastapi_app() -> FastAPI:
    """Create or retrieve cached FastAPI application.

    The sweep loop is not started here; in Lambda it runs from the scheduled event.

    Returns:
        Configured FastAPI application instance
    """
    global _fastapi_app

    if _fastapi_app is not None:
        return _fastapi_app

    _fastapi_app = create_app(
        queue_coordinator=get_queue_coordinator(),
        executor=get_deduction_executor(),
        report_service=get_report_service(),
        api_keys=get_api_keys(),
        run_worker=False,
    )

    logger.info("FastAPI application initialized")
    return _fastapi_app


def initialize_lambda_environment() -> None:
    """Initialize Lambda environment with logging and observability.

    Should be called once during Lambda cold start.
    """
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    setup_observability()

    logger.info("Lambda environment initialized")
