"""Custom metrics for the inventory deduction service."""

from opentelemetry import metrics

meter = metrics.get_meter("inventory-deduction-svc")

deduction_completed_counter = meter.create_counter(
    name="deduction_completed_total",
    description="Orders whose stock deduction was written",
    unit="1",
)

deduction_skipped_counter = meter.create_counter(
    name="deduction_skipped_total",
    description="Deduction requests that found the order already deducted",
    unit="1",
)

job_failure_counter = meter.create_counter(
    name="deduction_job_failure_total",
    description="Failed deduction attempts by error type",
    unit="1",
)

job_exhausted_counter = meter.create_counter(
    name="deduction_job_exhausted_total",
    description="Deduction jobs sent to manual review",
    unit="1",
)

low_stock_alert_counter = meter.create_counter(
    name="low_stock_alert_total",
    description="Low-stock alerts raised by ingredient",
    unit="1",
)

negative_stock_counter = meter.create_counter(
    name="negative_stock_warning_total",
    description="Deductions that took an ingredient below zero",
    unit="1",
)

enqueue_counter = meter.create_counter(
    name="deduction_enqueue_total",
    description="Enqueue requests by outcome (created or duplicate)",
    unit="1",
)

sweep_duration_histogram = meter.create_histogram(
    name="deduction_sweep_duration_seconds",
    description="Duration of one queue sweep",
    unit="s",
)


def record_deduction_completed(ingredient_count: int) -> None:
    """Record a written deduction.

    Args:
        ingredient_count: Number of ingredients changed
    """
    deduction_completed_counter.add(1, {"ingredients": str(min(ingredient_count, 10))})


def record_deduction_skipped() -> None:
    """Record a deduction short-circuited by the idempotency guard."""
    deduction_skipped_counter.add(1)


def record_job_failure(error_type: str, retryable: bool) -> None:
    """Record a failed deduction attempt.

    Args:
        error_type: Exception class name
        retryable: Whether the job will be retried
    """
    job_failure_counter.add(1, {"error_type": error_type, "retryable": str(retryable).lower()})


def record_job_exhausted(error_type: str) -> None:
    """Record a job sent to manual review.

    Args:
        error_type: Exception class name of the final failure
    """
    job_exhausted_counter.add(1, {"error_type": error_type})


def record_low_stock_alert(ingredient_id: str) -> None:
    """Record a raised low-stock alert."""
    low_stock_alert_counter.add(1, {"ingredient_id": ingredient_id})


def record_negative_stock(ingredient_id: str) -> None:
    """Record an ingredient going below zero."""
    negative_stock_counter.add(1, {"ingredient_id": ingredient_id})


def record_enqueue(created: bool) -> None:
    """Record an enqueue request.

    Args:
        created: True if a job was created, False if it was a duplicate
    """
    enqueue_counter.add(1, {"outcome": "created" if created else "duplicate"})


def record_sweep_duration(duration_seconds: float, processed: int) -> None:
    """Record the duration of a sweep.

    Args:
        duration_seconds: Duration in seconds
        processed: Jobs processed during the sweep
    """
    sweep_duration_histogram.record(duration_seconds, {"empty": str(processed == 0).lower()})
