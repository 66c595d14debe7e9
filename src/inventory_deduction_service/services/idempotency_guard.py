"""Idempotency guard for order deductions."""

import asyncio
import logging
from enum import Enum

from inventory_deduction_service.models.job_models import DeductionJobStatus
from inventory_deduction_service.repositories.inventory_repositories import (
    InventoryTransactionRepository,
)
from inventory_deduction_service.repositories.job_repository import DeductionJobRepository

logger = logging.getLogger(__name__)


class ClaimResult(str, Enum):
    """Outcome of trying to claim an order for deduction."""

    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


class IdempotencyGuard:
    """Decides whether an order still needs its stock deducted.

    An order counts as claimed only once a deduction has actually succeeded:
    either ledger rows exist for it or its job reached ``completed``. Nothing
    is written on claim, so a failed attempt leaves nothing behind to release.
    The ledger write itself is the final arbiter, since it refuses a second
    row for the same (order, ingredient) pair.
    """

    def __init__(
        self,
        transaction_repository: InventoryTransactionRepository,
        job_repository: DeductionJobRepository,
    ) -> None:
        """Initialize the guard.

        Args:
            transaction_repository: Ledger rows, the primary evidence of a deduction
            job_repository: Job records, for orders that completed with nothing to deduct
        """
        self.transaction_repository = transaction_repository
        self.job_repository = job_repository

    async def try_claim(self, order_id: str) -> ClaimResult:
        """Check whether the order may be deducted now.

        Args:
            order_id: Order identifier

        Returns:
            ClaimResult.ALREADY_CLAIMED if a successful deduction exists,
            ClaimResult.CLAIMED otherwise

        Raises:
            StorageUnavailableError: If either store could not be read
        """
        if await asyncio.to_thread(self.transaction_repository.has_transactions, order_id):
            logger.info(f"Order {order_id} already has ledger rows, skipping deduction")
            return ClaimResult.ALREADY_CLAIMED

        job = await asyncio.to_thread(self.job_repository.get_job, order_id)
        if job is not None and job.status == DeductionJobStatus.COMPLETED:
            logger.info(f"Order {order_id} deduction job already completed, skipping")
            return ClaimResult.ALREADY_CLAIMED

        return ClaimResult.CLAIMED
