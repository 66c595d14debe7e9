"""Exception taxonomy for the deduction pipeline.

Every failure that can reach the queue coordinator is a ``DeductionError``.
The ``retryable`` flag is the only thing the coordinator looks at when deciding
between another attempt and sending the job straight to manual review, so the
components that raise these never retry on their own.
"""

from typing import Any


class DeductionError(Exception):
    """Base exception for all deduction pipeline errors."""

    error_code = "DEDUCTION_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        order_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.order_id = order_id
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses and job records."""
        return {
            "error": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "order_id": self.order_id,
            "retryable": self.retryable,
            "details": self.details,
        }


class ResolutionError(DeductionError):
    """Raised when order lines cannot be turned into ingredient deltas."""

    error_code = "RESOLUTION_ERROR"


class MalformedOrderError(ResolutionError):
    """Order payload is structurally invalid. Retrying cannot fix it."""

    error_code = "MALFORMED_ORDER"
    retryable = False


class CatalogUnavailableError(ResolutionError):
    """Recipe data could not be loaded from the catalog."""

    error_code = "CATALOG_UNAVAILABLE"


class UnitConversionError(DeductionError):
    """No conversion exists between two units."""

    error_code = "UNIT_CONVERSION"

    def __init__(self, from_unit: str, to_unit: str, ingredient_id: str | None = None) -> None:
        self.from_unit = from_unit
        self.to_unit = to_unit
        self.ingredient_id = ingredient_id
        target = f" for ingredient {ingredient_id}" if ingredient_id else ""
        super().__init__(
            f"Cannot convert '{from_unit}' to '{to_unit}'{target}",
            details={"from_unit": from_unit, "to_unit": to_unit, "ingredient_id": ingredient_id},
        )


class LedgerError(DeductionError):
    """Base exception for stock ledger failures."""

    error_code = "LEDGER_ERROR"


class LedgerConflictError(LedgerError):
    """A concurrent writer changed a stock row, or the ledger row already exists."""

    error_code = "LEDGER_CONFLICT"


class StorageUnavailableError(LedgerError):
    """The durable store could not be reached or throttled the request."""

    error_code = "STORAGE_UNAVAILABLE"


class UnknownIngredientError(LedgerError):
    """A recipe references an ingredient that has no stock row."""

    error_code = "UNKNOWN_INGREDIENT"

    def __init__(self, ingredient_ids: list[str], order_id: str | None = None) -> None:
        self.ingredient_ids = ingredient_ids
        super().__init__(
            f"No stock record for ingredient(s): {', '.join(ingredient_ids)}",
            order_id=order_id,
            details={"ingredient_ids": ingredient_ids},
        )


class QueueError(DeductionError):
    """Base exception for queue coordinator failures."""

    error_code = "QUEUE_ERROR"


class RetryExhaustedError(QueueError):
    """A job used its whole retry budget and needs a human."""

    error_code = "RETRY_EXHAUSTED"
    retryable = False

    def __init__(self, order_id: str, attempts: int, last_error: str | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Deduction for order {order_id} failed after {attempts} attempt(s): {last_error}",
            order_id=order_id,
            details={"attempts": attempts, "last_error": last_error, "requires_manual_review": True},
        )
