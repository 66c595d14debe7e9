"""Shared pytest fixtures and configuration for all tests.

Besides plain sample data this provides in-memory stand-ins for the DynamoDB
repositories. They honour the same conditional-write rules as the real tables
(version checks, one ledger row per order and ingredient, one job per order,
claim conditions) so the pipeline can be exercised end to end without AWS.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

from collections.abc import Callable  # noqa: E402
from dataclasses import dataclass  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402

from inventory_deduction_service.errors import (  # noqa: E402
    CatalogUnavailableError,
    DeductionError,
    LedgerConflictError,
)
from inventory_deduction_service.models.inventory_models import (  # noqa: E402
    IngredientStock,
    InventoryTransaction,
    LowStockAlert,
    StockMutation,
)
from inventory_deduction_service.models.job_models import (  # noqa: E402
    DeductionJob,
    DeductionJobStatus,
)
from inventory_deduction_service.models.recipe_models import Recipe  # noqa: E402
from inventory_deduction_service.notifiers.base_notifier import Notifier  # noqa: E402
from inventory_deduction_service.repositories.job_repository import ABANDONED_CLAIM_ERROR  # noqa: E402
from inventory_deduction_service.services.deduction_executor import DeductionExecutor  # noqa: E402
from inventory_deduction_service.services.idempotency_guard import IdempotencyGuard  # noqa: E402
from inventory_deduction_service.services.low_stock_alerter import LowStockAlerter  # noqa: E402
from inventory_deduction_service.services.queue_coordinator import QueueCoordinator  # noqa: E402
from inventory_deduction_service.services.recipe_resolver import RecipeResolver  # noqa: E402
from inventory_deduction_service.services.stock_ledger import StockLedger  # noqa: E402


class FakeClock:
    """Controllable clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class InMemoryStockStore:
    """Stock rows plus the ledger, written together like the DynamoDB transaction.

    Serves as both the stock repository and the transaction repository.
    ``before_write`` runs at the start of every ledger write, which lets a test
    play a concurrent writer.
    """

    def __init__(self) -> None:
        self.stocks: dict[str, IngredientStock] = {}
        self.transactions: dict[tuple[str, str], InventoryTransaction] = {}
        self.before_write: Callable[[], None] | None = None
        self.write_count = 0

    def add_stock(
        self,
        ingredient_id: str,
        quantity: str | Decimal,
        unit: str,
        reorder_threshold: str | Decimal = "0",
    ) -> None:
        self.stocks[ingredient_id] = IngredientStock(
            ingredient_id=ingredient_id,
            quantity=Decimal(str(quantity)),
            unit=unit,
            reorder_threshold=Decimal(str(reorder_threshold)),
        )

    def quantity(self, ingredient_id: str) -> Decimal:
        return self.stocks[ingredient_id].quantity

    def get_stock(self, ingredient_id: str) -> IngredientStock | None:
        stock = self.stocks.get(ingredient_id)
        return stock.model_copy() if stock else None

    def get_stocks(self, ingredient_ids: Any) -> dict[str, IngredientStock]:
        found = {}
        for ingredient_id in ingredient_ids:
            stock = self.get_stock(ingredient_id)
            if stock is not None:
                found[ingredient_id] = stock
        return found

    def list_low_stock(self) -> list[IngredientStock]:
        return sorted(
            (s.model_copy() for s in self.stocks.values() if s.is_low_stock),
            key=lambda s: s.ingredient_id,
        )

    def decrement_many(
        self, order_id: str, mutations: list[StockMutation], now: datetime
    ) -> list[InventoryTransaction]:
        if self.before_write is not None:
            hook, self.before_write = self.before_write, None
            hook()

        for mutation in mutations:
            stock = self.stocks.get(mutation.ingredient_id)
            if (
                stock is None
                or stock.version != mutation.expected_version
                or (order_id, mutation.ingredient_id) in self.transactions
            ):
                raise LedgerConflictError("Stock changed concurrently", order_id=order_id)

        rows = []
        for mutation in mutations:
            stock = self.stocks[mutation.ingredient_id]
            self.stocks[mutation.ingredient_id] = stock.model_copy(
                update={
                    "quantity": mutation.resulting_quantity,
                    "version": stock.version + 1,
                    "updated_at": now,
                }
            )
            row = InventoryTransaction(
                order_id=order_id,
                ingredient_id=mutation.ingredient_id,
                delta=mutation.delta,
                previous_quantity=mutation.previous_quantity,
                resulting_quantity=mutation.resulting_quantity,
                unit=mutation.unit,
                created_at=now,
            )
            self.transactions[(order_id, mutation.ingredient_id)] = row
            rows.append(row)

        self.write_count += 1
        return rows

    def has_transactions(self, order_id: str) -> bool:
        return any(key[0] == order_id for key in self.transactions)

    def list_for_order(self, order_id: str) -> list[InventoryTransaction]:
        return [row for key, row in self.transactions.items() if key[0] == order_id]

    def list_for_ingredient(self, ingredient_id: str, limit: int = 50) -> list[InventoryTransaction]:
        rows = [row for key, row in self.transactions.items() if key[1] == ingredient_id]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)[:limit]


class InMemoryJobRepository:
    """Job table with the same conditional transitions as DeductionJobRepository."""

    def __init__(self) -> None:
        self.jobs: dict[str, DeductionJob] = {}

    def create_job(self, job: DeductionJob) -> bool:
        existing = self.jobs.get(job.order_id)
        if existing is not None and existing.status != DeductionJobStatus.EXHAUSTED:
            return False
        self.jobs[job.order_id] = job.model_copy()
        return True

    def get_job(self, order_id: str) -> DeductionJob | None:
        job = self.jobs.get(order_id)
        return job.model_copy() if job else None

    def list_jobs_by_status(
        self, status: DeductionJobStatus, limit: int | None = None, newest_first: bool = False
    ) -> list[DeductionJob]:
        jobs = sorted(
            (job.model_copy() for job in self.jobs.values() if job.status == status),
            key=lambda job: job.created_at,
            reverse=newest_first,
        )
        return jobs if limit is None else jobs[:limit]

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in DeductionJobStatus}
        for job in self.jobs.values():
            counts[job.status.value] += 1
        return counts

    def claim_job(self, order_id: str, now: datetime, stale_before: datetime) -> DeductionJob | None:
        job = self.jobs.get(order_id)
        if job is None:
            return None
        if job.status == DeductionJobStatus.PENDING:
            update: dict[str, Any] = {"status": DeductionJobStatus.PROCESSING}
        elif job.is_stale(stale_before):
            update = {"attempts": job.attempts + 1, "last_error": ABANDONED_CLAIM_ERROR}
        else:
            return None
        self.jobs[order_id] = job.model_copy(update={**update, "locked_at": now, "updated_at": now})
        return self.jobs[order_id].model_copy()

    def _finish(self, order_id: str, **update: Any) -> bool:
        job = self.jobs.get(order_id)
        if job is None or job.status != DeductionJobStatus.PROCESSING:
            return False
        self.jobs[order_id] = job.model_copy(update={**update, "locked_at": None})
        return True

    def complete_job(self, order_id: str, now: datetime) -> bool:
        return self._finish(
            order_id, status=DeductionJobStatus.COMPLETED, completed_at=now, updated_at=now
        )

    def release_for_retry(self, order_id: str, attempts: int, error: str, now: datetime) -> bool:
        return self._finish(
            order_id,
            status=DeductionJobStatus.PENDING,
            attempts=attempts,
            last_error=error,
            updated_at=now,
        )

    def mark_exhausted(self, order_id: str, attempts: int, error: str, now: datetime) -> bool:
        return self._finish(
            order_id,
            status=DeductionJobStatus.EXHAUSTED,
            attempts=attempts,
            last_error=error,
            updated_at=now,
        )

    def reset_job(self, order_id: str, now: datetime) -> bool:
        job = self.jobs.get(order_id)
        if job is None or job.status != DeductionJobStatus.EXHAUSTED:
            return False
        self.jobs[order_id] = job.model_copy(
            update={
                "status": DeductionJobStatus.PENDING,
                "attempts": 0,
                "last_error": None,
                "updated_at": now,
            }
        )
        return True

    def delete_completed_before(self, cutoff: datetime) -> int:
        doomed = [
            order_id
            for order_id, job in self.jobs.items()
            if job.status == DeductionJobStatus.COMPLETED
            and job.completed_at is not None
            and job.completed_at < cutoff
        ]
        for order_id in doomed:
            del self.jobs[order_id]
        return len(doomed)


class InMemoryAlertRepository:
    """Alert table."""

    def __init__(self) -> None:
        self.alerts: list[LowStockAlert] = []

    def save_alert(self, alert: LowStockAlert) -> bool:
        self.alerts.append(alert)
        return True

    def list_for_ingredient(self, ingredient_id: str, limit: int = 20) -> list[LowStockAlert]:
        matching = [alert for alert in self.alerts if alert.ingredient_id == ingredient_id]
        return sorted(matching, key=lambda alert: alert.created_at, reverse=True)[:limit]

    def list_recent(self, limit: int = 50) -> list[LowStockAlert]:
        return sorted(self.alerts, key=lambda alert: alert.created_at, reverse=True)[:limit]


class FakeRecipeCatalog:
    """Recipe catalog keyed by menu item id; ``unavailable`` makes every lookup fail."""

    def __init__(self) -> None:
        self.recipes: dict[str, Recipe] = {}
        self.calls: list[str] = []
        self.unavailable = False

    def add_recipe(self, menu_item_id: str, components: list[dict[str, Any]]) -> None:
        self.recipes[menu_item_id] = Recipe(menu_item_id=menu_item_id, components=components)

    async def get_recipe(self, menu_item_id: str) -> Recipe | None:
        self.calls.append(menu_item_id)
        if self.unavailable:
            raise CatalogUnavailableError("catalog down")
        return self.recipes.get(menu_item_id)


class RecordingNotifier(Notifier):
    """Notifier that remembers what it was asked to send."""

    def __init__(self) -> None:
        super().__init__("recording")
        self.low_stock: list[LowStockAlert] = []
        self.manual_reviews: list[tuple[DeductionJob, DeductionError]] = []

    async def notify_low_stock(self, alert: LowStockAlert) -> bool:
        self.low_stock.append(alert)
        return True

    async def notify_manual_review(self, job: DeductionJob, error: DeductionError) -> bool:
        self.manual_reviews.append((job, error))
        return True


@dataclass
class Pipeline:
    """Real services wired to in-memory stores."""

    clock: FakeClock
    stock: InMemoryStockStore
    jobs: InMemoryJobRepository
    alerts: InMemoryAlertRepository
    catalog: FakeRecipeCatalog
    notifier: RecordingNotifier
    executor: DeductionExecutor
    coordinator: QueueCoordinator


@pytest.fixture
def fake_clock() -> FakeClock:
    """Fixture providing a controllable clock."""
    return FakeClock()


@pytest.fixture
def stock_store() -> InMemoryStockStore:
    """Fixture providing an empty in-memory stock and ledger store."""
    return InMemoryStockStore()


@pytest.fixture
def job_store() -> InMemoryJobRepository:
    """Fixture providing an empty in-memory job table."""
    return InMemoryJobRepository()


@pytest.fixture
def alert_store() -> InMemoryAlertRepository:
    """Fixture providing an empty in-memory alert table."""
    return InMemoryAlertRepository()


@pytest.fixture
def recipe_catalog() -> FakeRecipeCatalog:
    """Fixture providing an empty recipe catalog."""
    return FakeRecipeCatalog()


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    """Fixture providing a notifier that records calls."""
    return RecordingNotifier()


@pytest.fixture
def pipeline(
    fake_clock: FakeClock,
    stock_store: InMemoryStockStore,
    job_store: InMemoryJobRepository,
    alert_store: InMemoryAlertRepository,
    recipe_catalog: FakeRecipeCatalog,
    recording_notifier: RecordingNotifier,
) -> Pipeline:
    """Fixture wiring the real pipeline services to the in-memory stores."""
    executor = DeductionExecutor(
        resolver=RecipeResolver(recipe_catalog),  # type: ignore[arg-type]
        ledger=StockLedger(stock_store, clock=fake_clock),  # type: ignore[arg-type]
        guard=IdempotencyGuard(stock_store, job_store),  # type: ignore[arg-type]
        alerter=LowStockAlerter(alert_store, recording_notifier, clock=fake_clock),  # type: ignore[arg-type]
    )
    coordinator = QueueCoordinator(
        job_repository=job_store,  # type: ignore[arg-type]
        executor=executor,
        notifier=recording_notifier,
        max_attempts=3,
        sweep_interval_seconds=0.01,
        stale_lock_seconds=300,
        batch_size=25,
        clock=fake_clock,
    )
    return Pipeline(
        clock=fake_clock,
        stock=stock_store,
        jobs=job_store,
        alerts=alert_store,
        catalog=recipe_catalog,
        notifier=recording_notifier,
        executor=executor,
        coordinator=coordinator,
    )


@pytest.fixture
def latte_lines() -> list[dict[str, Any]]:
    """Fixture providing one large latte line, quantity two."""
    return [{"menu_item_id": "latte", "quantity": 2, "customizations": {"size": "large"}}]


@pytest.fixture
def mock_payment_event() -> dict[str, Any]:
    """Fixture providing a sample EventBridge payment confirmed event."""
    return {
        "version": "0",
        "id": "event_123",
        "detail-type": "PaymentConfirmed",
        "source": "com.cafe.payments",
        "account": "123456789012",
        "time": "2024-03-01T09:00:00Z",
        "region": "us-east-1",
        "resources": [],
        "detail": {
            "order_id": "ord_1001",
            "order_lines": [
                {"menu_item_id": "latte", "quantity": 2, "customizations": {"size": "large"}}
            ],
            "paid_at": "2024-03-01T09:00:00Z",
        },
    }
