"""FastAPI application for the admin API endpoints."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from inventory_deduction_service.auth.api_keys import APIKeyValidator, get_api_key_from_header
from inventory_deduction_service.errors import (
    DeductionError,
    MalformedOrderError,
    QueueError,
    StorageUnavailableError,
)
from inventory_deduction_service.models.inventory_models import InventoryTransaction, LowStockAlert
from inventory_deduction_service.models.job_models import (
    DeductionJob,
    DeductionJobStatus,
    QueueStatus,
)
from inventory_deduction_service.services.deduction_executor import DeductionExecutor
from inventory_deduction_service.services.inventory_report_service import (
    InventoryReportService,
    LowStockItem,
)
from inventory_deduction_service.services.queue_coordinator import QueueCoordinator

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    worker_running: bool


class EnqueueRequest(BaseModel):
    """Request model for queueing a deduction by hand (repair scripts, staff re-sends)."""

    order_id: str = Field(..., min_length=1)
    order_lines: list[dict[str, Any]]


class EnqueueResponse(BaseModel):
    """Response model for enqueue requests."""

    order_id: str
    queued: bool
    message: str


class SweepResponse(BaseModel):
    """Response model for a manually triggered sweep."""

    processed: int
    completed: int
    retried: int
    exhausted: int
    skipped: int


class CleanupResponse(BaseModel):
    """Response model for completed-job cleanup."""

    deleted: int
    days_to_keep: int


class PreviewRequest(BaseModel):
    """Request model for a fulfilment preview."""

    order_lines: list[dict[str, Any]]


class PreviewLine(BaseModel):
    """Projected stock effect for one ingredient."""

    ingredient_id: str
    required: Decimal
    available: Decimal | None
    unit: str
    shortfall: Decimal
    can_fulfill: bool


class PreviewResponse(BaseModel):
    """Response model for a fulfilment preview."""

    can_fulfill: bool
    lines: list[PreviewLine]
    missing_recipes: list[str]
    warnings: list[str]


def create_app(
    queue_coordinator: QueueCoordinator,
    executor: DeductionExecutor,
    report_service: InventoryReportService,
    api_keys: list[str],
    run_worker: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        queue_coordinator: Coordinator owning the deduction queue
        executor: Deduction executor, used for previews
        report_service: Read-only inventory reporting
        api_keys: List of valid API keys for authentication
        run_worker: Start the sweep loop for the lifetime of the app

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if run_worker:
            queue_coordinator.start()
        yield
        if run_worker:
            await queue_coordinator.stop()

    app = FastAPI(
        title="Inventory Deduction Service Admin API",
        description="Admin API for the order-to-inventory deduction queue and stock ledger",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.queue_coordinator = queue_coordinator
    app.state.executor = executor
    app.state.report_service = report_service
    app.state.api_key_validator = APIKeyValidator(api_keys=api_keys)

    @app.exception_handler(DeductionError)
    async def deduction_error_handler(_request: Request, exc: DeductionError) -> JSONResponse:
        status_code = 500
        if isinstance(exc, StorageUnavailableError):
            status_code = 503
        elif isinstance(exc, MalformedOrderError):
            status_code = 422
        logger.error(f"Admin request failed: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Health check endpoint.

        Returns:
            Health status and whether the sweep loop is running in this process
        """
        return HealthResponse(status="healthy", worker_running=app.state.queue_coordinator.is_running)

    def validate_api_key(x_api_key: str | None = Header(None)) -> str:
        """Dependency to validate API key."""
        return get_api_key_from_header(x_api_key=x_api_key, validator=app.state.api_key_validator)

    @app.post(
        "/admin/deductions/enqueue",
        response_model=EnqueueResponse,
        status_code=202,
        tags=["Queue"],
    )
    async def enqueue_deduction(
        request: EnqueueRequest,
        _api_key: str = Depends(validate_api_key),
    ) -> EnqueueResponse:
        """Queue a deduction for a paid order. Idempotent per order."""
        queued = await app.state.queue_coordinator.enqueue(request.order_id, request.order_lines)
        return EnqueueResponse(
            order_id=request.order_id,
            queued=queued,
            message="Deduction queued" if queued else "Deduction already queued",
        )

    @app.get("/admin/jobs", response_model=list[DeductionJob], tags=["Queue"])
    async def list_jobs(
        status: DeductionJobStatus = DeductionJobStatus.EXHAUSTED,
        limit: int = Query(50, ge=1, le=500),
        _api_key: str = Depends(validate_api_key),
    ) -> list[DeductionJob]:
        """List jobs in a status, newest first. Defaults to the manual-review view."""
        jobs: list[DeductionJob] = await app.state.queue_coordinator.list_jobs(status=status, limit=limit)
        return jobs

    @app.get("/admin/jobs/{order_id}", response_model=DeductionJob, tags=["Queue"])
    async def get_job(
        order_id: str,
        _api_key: str = Depends(validate_api_key),
    ) -> DeductionJob:
        """Get the deduction job for an order.

        Raises:
            HTTPException: If the order has no job
        """
        job = await app.state.queue_coordinator.get_job(order_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"No deduction job for order {order_id}")
        return job

    @app.post("/admin/jobs/{order_id}/retry", response_model=DeductionJob, tags=["Queue"])
    async def retry_job(
        order_id: str,
        _api_key: str = Depends(validate_api_key),
    ) -> DeductionJob:
        """Give an exhausted job a fresh retry budget.

        Raises:
            HTTPException: 404 if the order has no job, 409 if it is not exhausted
        """
        try:
            job = await app.state.queue_coordinator.retry_job(order_id)
        except QueueError as e:
            raise HTTPException(status_code=409, detail=e.message) from e

        if job is None:
            raise HTTPException(status_code=404, detail=f"No deduction job for order {order_id}")

        logger.info(f"Manual retry requested for order {order_id}")
        return job

    @app.get("/admin/queue/status", response_model=QueueStatus, tags=["Queue"])
    async def get_queue_status(
        _api_key: str = Depends(validate_api_key),
    ) -> QueueStatus:
        """Get job counts per status and recent unfinished jobs."""
        status: QueueStatus = await app.state.queue_coordinator.get_queue_status()
        return status

    @app.post("/admin/queue/sweep", response_model=SweepResponse, tags=["Queue"])
    async def trigger_sweep(
        _api_key: str = Depends(validate_api_key),
    ) -> SweepResponse:
        """Run one sweep cycle now."""
        logger.info("Manual sweep triggered")
        result = await app.state.queue_coordinator.run_sweep()
        return SweepResponse(**asdict(result))

    @app.post("/admin/queue/cleanup", response_model=CleanupResponse, tags=["Queue"])
    async def cleanup_jobs(
        days_to_keep: int = Query(7, ge=1),
        _api_key: str = Depends(validate_api_key),
    ) -> CleanupResponse:
        """Delete completed jobs older than the retention window."""
        deleted = await app.state.queue_coordinator.cleanup_completed_jobs(days_to_keep=days_to_keep)
        return CleanupResponse(deleted=deleted, days_to_keep=days_to_keep)

    @app.get(
        "/admin/orders/{order_id}/transactions",
        response_model=list[InventoryTransaction],
        tags=["Inventory"],
    )
    async def get_order_transactions(
        order_id: str,
        _api_key: str = Depends(validate_api_key),
    ) -> list[InventoryTransaction]:
        """Get the ledger rows an order produced."""
        rows: list[InventoryTransaction] = await app.state.report_service.get_order_usage(order_id)
        return rows

    @app.get(
        "/admin/ingredients/{ingredient_id}/transactions",
        response_model=list[InventoryTransaction],
        tags=["Inventory"],
    )
    async def get_ingredient_transactions(
        ingredient_id: str,
        limit: int = Query(50, ge=1, le=500),
        _api_key: str = Depends(validate_api_key),
    ) -> list[InventoryTransaction]:
        """Get recent ledger rows for an ingredient, newest first."""
        rows: list[InventoryTransaction] = await app.state.report_service.get_ingredient_history(
            ingredient_id, limit=limit
        )
        return rows

    @app.get("/admin/low-stock", response_model=list[LowStockItem], tags=["Inventory"])
    async def list_low_stock(
        _api_key: str = Depends(validate_api_key),
    ) -> list[LowStockItem]:
        """List ingredients at or below their reorder threshold."""
        items: list[LowStockItem] = await app.state.report_service.list_low_stock()
        return items

    @app.get("/admin/alerts", response_model=list[LowStockAlert], tags=["Inventory"])
    async def list_alerts(
        ingredient_id: str | None = None,
        limit: int = Query(50, ge=1, le=500),
        _api_key: str = Depends(validate_api_key),
    ) -> list[LowStockAlert]:
        """List recent low-stock alerts, optionally for one ingredient."""
        alerts: list[LowStockAlert] = await app.state.report_service.list_alerts(
            ingredient_id=ingredient_id, limit=limit
        )
        return alerts

    @app.post("/admin/orders/preview", response_model=PreviewResponse, tags=["Inventory"])
    async def preview_order(
        request: PreviewRequest,
        _api_key: str = Depends(validate_api_key),
    ) -> PreviewResponse:
        """Resolve an order and check it against current stock without deducting."""
        preview = await app.state.executor.preview(request.order_lines)
        return PreviewResponse(
            can_fulfill=preview.fulfillment.can_fulfill,
            lines=[
                PreviewLine(
                    ingredient_id=line.ingredient_id,
                    required=line.required,
                    available=line.available,
                    unit=line.unit,
                    shortfall=line.shortfall,
                    can_fulfill=line.can_fulfill,
                )
                for line in preview.fulfillment.lines
            ],
            missing_recipes=preview.resolved.missing_recipes,
            warnings=[warning.message for warning in preview.resolved.warnings],
        )

    return app
