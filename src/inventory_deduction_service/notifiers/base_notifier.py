"""Base notifier for staff-facing signals.

This module defines the abstract base class for everything that tells a human
about inventory: low-stock alerts and jobs that need manual review. Notifiers
use simple return values (False) for delivery failures rather than raising,
because a missed notification must never undo or block a deduction.
"""

from abc import ABC, abstractmethod

from inventory_deduction_service.errors import DeductionError
from inventory_deduction_service.models.inventory_models import LowStockAlert
from inventory_deduction_service.models.job_models import DeductionJob


class Notifier(ABC):
    """Abstract base class for notification channels.

    The notifier follows a simple error handling pattern:
    - Both methods return False on delivery failure
    - Callers log and carry on; there is no retry
    """

    def __init__(self, channel_name: str) -> None:
        """Initialize the notifier.

        Args:
            channel_name: Name of the channel (e.g., 'log', 'webhook')
        """
        self.channel_name = channel_name

    @abstractmethod
    async def notify_low_stock(self, alert: LowStockAlert) -> bool:
        """Tell staff an ingredient crossed its reorder threshold.

        Args:
            alert: The alert that was raised

        Returns:
            bool: True if delivered, False otherwise
        """
        pass

    @abstractmethod
    async def notify_manual_review(self, job: DeductionJob, error: DeductionError) -> bool:
        """Tell staff a deduction job was given up on.

        Args:
            job: The exhausted job
            error: Why it was exhausted (RetryExhaustedError or a terminal error)

        Returns:
            bool: True if delivered, False otherwise
        """
        pass
