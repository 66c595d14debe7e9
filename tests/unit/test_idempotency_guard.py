"""Unit tests for IdempotencyGuard."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from inventory_deduction_service.errors import StorageUnavailableError
from inventory_deduction_service.models.job_models import DeductionJob, DeductionJobStatus
from inventory_deduction_service.repositories.inventory_repositories import (
    InventoryTransactionRepository,
)
from inventory_deduction_service.repositories.job_repository import DeductionJobRepository
from inventory_deduction_service.services.idempotency_guard import ClaimResult, IdempotencyGuard


@pytest.mark.unit
class TestIdempotencyGuard:
    """Test suite for IdempotencyGuard."""

    @pytest.fixture
    def mock_transactions(self) -> MagicMock:
        """Create a mock InventoryTransactionRepository."""
        repo = MagicMock(spec=InventoryTransactionRepository)
        repo.has_transactions.return_value = False
        return repo

    @pytest.fixture
    def mock_jobs(self) -> MagicMock:
        """Create a mock DeductionJobRepository."""
        repo = MagicMock(spec=DeductionJobRepository)
        repo.get_job.return_value = None
        return repo

    @pytest.fixture
    def guard(self, mock_transactions: MagicMock, mock_jobs: MagicMock) -> IdempotencyGuard:
        """Create an IdempotencyGuard with mocked repositories."""
        return IdempotencyGuard(transaction_repository=mock_transactions, job_repository=mock_jobs)

    def make_job(self, status: DeductionJobStatus) -> DeductionJob:
        return DeductionJob(order_id="ord_1", status=status, created_at=datetime.now(UTC))

    @pytest.mark.asyncio
    async def test_new_order_claimed(self, guard: IdempotencyGuard) -> None:
        """Test an order with no evidence of deduction may proceed."""
        assert await guard.try_claim("ord_1") == ClaimResult.CLAIMED

    @pytest.mark.asyncio
    async def test_ledger_rows_mean_already_claimed(
        self, guard: IdempotencyGuard, mock_transactions: MagicMock, mock_jobs: MagicMock
    ) -> None:
        """Test existing ledger rows short-circuit the job lookup."""
        mock_transactions.has_transactions.return_value = True

        assert await guard.try_claim("ord_1") == ClaimResult.ALREADY_CLAIMED
        mock_jobs.get_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_completed_job_means_already_claimed(
        self, guard: IdempotencyGuard, mock_jobs: MagicMock
    ) -> None:
        """Test an order completed with nothing to deduct is not run again."""
        mock_jobs.get_job.return_value = self.make_job(DeductionJobStatus.COMPLETED)

        assert await guard.try_claim("ord_1") == ClaimResult.ALREADY_CLAIMED

    @pytest.mark.parametrize(
        "status", [DeductionJobStatus.PROCESSING, DeductionJobStatus.PENDING, DeductionJobStatus.EXHAUSTED]
    )
    @pytest.mark.asyncio
    async def test_unfinished_job_claimed(
        self, guard: IdempotencyGuard, mock_jobs: MagicMock, status: DeductionJobStatus
    ) -> None:
        """Test a failed or in-flight attempt leaves nothing that blocks the next one."""
        mock_jobs.get_job.return_value = self.make_job(status)

        assert await guard.try_claim("ord_1") == ClaimResult.CLAIMED

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(
        self, guard: IdempotencyGuard, mock_transactions: MagicMock
    ) -> None:
        """Test the guard never guesses when the ledger cannot be read."""
        mock_transactions.has_transactions.side_effect = StorageUnavailableError("down")

        with pytest.raises(StorageUnavailableError):
            await guard.try_claim("ord_1")
