"""Component tests for the deduction pipeline.

Real resolver, ledger, guard, alerter, executor and coordinator wired to the
in-memory stores from conftest.
"""

import asyncio
import contextlib
import threading
import time
from decimal import Decimal

import pytest

from inventory_deduction_service.errors import (
    LedgerConflictError,
    MalformedOrderError,
    RetryExhaustedError,
)
from inventory_deduction_service.models.job_models import DeductionJobStatus
from inventory_deduction_service.repositories.job_repository import ABANDONED_CLAIM_ERROR
from inventory_deduction_service.services.deduction_executor import DeductionStatus
from inventory_deduction_service.services.recipe_resolver import ResolutionWarningKind


def add_latte_recipe(pipeline, with_beans: bool = False) -> None:
    components = [
        {
            "ingredient_id": "milk",
            "base_quantity": "100",
            "unit": "ml",
            "customization_overrides": [
                {"option": "size", "value": "large", "quantity": "150"},
                {"option": "milk", "value": "none", "omit": True},
            ],
        }
    ]
    if with_beans:
        components.append({"ingredient_id": "coffee_beans", "base_quantity": "18", "unit": "g"})
    pipeline.catalog.add_recipe("latte", components)


@pytest.mark.component
class TestDeductionExecution:
    """Executor behaviour against in-memory stores."""

    @pytest.mark.asyncio
    async def test_large_latte_example(self, pipeline, latte_lines) -> None:
        """Test two large lattes deduct 300 ml of milk exactly once."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "1000", "ml", reorder_threshold="200")

        outcome = await pipeline.executor.execute("ord_1", latte_lines)

        assert outcome.status == DeductionStatus.APPLIED
        assert len(outcome.applied) == 1
        assert outcome.applied[0].ingredient_id == "milk"
        assert outcome.applied[0].delta == Decimal("-300")
        assert pipeline.stock.quantity("milk") == Decimal("700")
        assert outcome.alerts == []
        assert pipeline.alerts.alerts == []

        again = await pipeline.executor.execute("ord_1", latte_lines)

        assert again.status == DeductionStatus.ALREADY_APPLIED
        assert again.applied == []
        assert len(pipeline.stock.list_for_order("ord_1")) == 1
        assert pipeline.stock.quantity("milk") == Decimal("700")

    @pytest.mark.asyncio
    async def test_shared_ingredient_aggregated_into_one_row(self, pipeline) -> None:
        """Test two lines consuming milk produce a single net ledger row."""
        add_latte_recipe(pipeline)
        pipeline.catalog.add_recipe(
            "flat_white", [{"ingredient_id": "milk", "base_quantity": "0.12", "unit": "l"}]
        )
        pipeline.stock.add_stock("milk", "2000", "ml")

        await pipeline.executor.execute(
            "ord_2",
            [
                {"menu_item_id": "latte", "quantity": 1},
                {"menuItemId": "flat_white", "quantity": 1},
            ],
        )

        rows = pipeline.stock.list_for_order("ord_2")
        assert len(rows) == 1
        assert rows[0].delta == Decimal("-220")
        assert pipeline.stock.quantity("milk") == Decimal("1780")

    @pytest.mark.asyncio
    async def test_conflict_leaves_every_ingredient_untouched(self, pipeline) -> None:
        """Test a concurrent write to one ingredient rolls back the whole order."""
        add_latte_recipe(pipeline, with_beans=True)
        pipeline.stock.add_stock("milk", "1000", "ml")
        pipeline.stock.add_stock("coffee_beans", "1000", "g")

        def concurrent_writer() -> None:
            beans = pipeline.stock.stocks["coffee_beans"]
            pipeline.stock.stocks["coffee_beans"] = beans.model_copy(
                update={"quantity": Decimal("990"), "version": beans.version + 1}
            )

        pipeline.stock.before_write = concurrent_writer

        with pytest.raises(LedgerConflictError):
            await pipeline.executor.execute("ord_3", [{"menu_item_id": "latte"}])

        assert pipeline.stock.quantity("milk") == Decimal("1000")
        assert pipeline.stock.quantity("coffee_beans") == Decimal("990")
        assert pipeline.stock.list_for_order("ord_3") == []

    @pytest.mark.asyncio
    async def test_omit_override_skips_component(self, pipeline) -> None:
        """Test an omit override contributes nothing for that ingredient."""
        add_latte_recipe(pipeline, with_beans=True)
        pipeline.stock.add_stock("milk", "1000", "ml")
        pipeline.stock.add_stock("coffee_beans", "1000", "g")

        outcome = await pipeline.executor.execute(
            "ord_4", [{"menu_item_id": "latte", "customizations": {"Milk": "None"}}]
        )

        assert [item.ingredient_id for item in outcome.applied] == ["coffee_beans"]
        assert pipeline.stock.quantity("milk") == Decimal("1000")

    @pytest.mark.asyncio
    async def test_missing_recipe_is_partial_success(self, pipeline) -> None:
        """Test an item without a recipe is skipped with a warning, not a failure."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "1000", "ml")

        outcome = await pipeline.executor.execute(
            "ord_5", [{"menu_item_id": "latte"}, {"menu_item_id": "gift_card"}]
        )

        assert outcome.status == DeductionStatus.APPLIED
        assert pipeline.stock.quantity("milk") == Decimal("900")
        assert [w.kind for w in outcome.warnings] == [ResolutionWarningKind.MISSING_RECIPE]
        assert outcome.warnings[0].menu_item_id == "gift_card"

    @pytest.mark.asyncio
    async def test_negative_stock_is_allowed_and_reported(self, pipeline, latte_lines) -> None:
        """Test overselling goes below zero and is surfaced as a warning."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "100", "ml", reorder_threshold="50")

        outcome = await pipeline.executor.execute("ord_6", latte_lines)

        assert pipeline.stock.quantity("milk") == Decimal("-200")
        assert [w.ingredient_id for w in outcome.negative_stock] == ["milk"]
        assert len(outcome.alerts) == 1
        assert outcome.alerts[0].is_critical

    @pytest.mark.asyncio
    async def test_extra_shot_converted_to_stock_unit(self, pipeline) -> None:
        """Test an extra in shots is multiplied per unit and converted to ml."""
        pipeline.catalog.add_recipe(
            "americano", [{"ingredient_id": "espresso", "base_quantity": "50", "unit": "ml"}]
        )
        pipeline.stock.add_stock("espresso", "1", "l")

        await pipeline.executor.execute(
            "ord_7",
            [
                {
                    "menu_item_id": "americano",
                    "quantity": 2,
                    "extraIngredients": [{"ingredientId": "espresso", "amount": 1, "unit": "shot"}],
                }
            ],
        )

        # (50 ml + 25 ml) x 2 = 150 ml = 0.15 l
        assert pipeline.stock.quantity("espresso") == Decimal("0.85")


@pytest.mark.component
class TestLowStockAlerting:
    """Threshold crossing across consecutive orders."""

    @pytest.mark.asyncio
    async def test_alert_fires_once_per_crossing(self, pipeline) -> None:
        """Test 10 -> 4 raises one alert and 4 -> 2 raises none."""
        pipeline.catalog.add_recipe(
            "cookie", [{"ingredient_id": "cookie_dough", "base_quantity": "1", "unit": "pc"}]
        )
        pipeline.stock.add_stock("cookie_dough", "10", "pc", reorder_threshold="5")

        first = await pipeline.executor.execute("ord_10", [{"menu_item_id": "cookie", "quantity": 6}])
        second = await pipeline.executor.execute("ord_11", [{"menu_item_id": "cookie", "quantity": 2}])

        assert pipeline.stock.quantity("cookie_dough") == Decimal("2")
        assert len(first.alerts) == 1
        assert first.alerts[0].observed_quantity == Decimal("4")
        assert first.alerts[0].order_id == "ord_10"
        assert second.alerts == []
        assert len(pipeline.alerts.alerts) == 1
        assert len(pipeline.notifier.low_stock) == 1


@pytest.mark.component
class TestQueueProcessing:
    """Coordinator sweeps over the in-memory job table."""

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_deducts_once(self, pipeline, latte_lines) -> None:
        """Test enqueuing the same order twice yields one job and one deduction."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "1000", "ml")

        assert await pipeline.coordinator.enqueue("ord_20", latte_lines) is True
        assert await pipeline.coordinator.enqueue("ord_20", latte_lines) is False

        result = await pipeline.coordinator.run_sweep()

        assert result.processed == 1
        assert result.completed == 1
        assert pipeline.jobs.jobs["ord_20"].status == DeductionJobStatus.COMPLETED
        assert pipeline.stock.quantity("milk") == Decimal("700")

        assert await pipeline.coordinator.enqueue("ord_20", latte_lines) is False
        assert (await pipeline.coordinator.run_sweep()).processed == 0
        assert pipeline.stock.write_count == 1

    @pytest.mark.asyncio
    async def test_job_exhausts_after_exactly_max_attempts(self, pipeline, latte_lines) -> None:
        """Test an always-failing job is retried once per sweep and exhausted at the bound."""
        pipeline.catalog.unavailable = True
        await pipeline.coordinator.enqueue("ord_21", latte_lines)

        for expected_attempts in (1, 2):
            result = await pipeline.coordinator.run_sweep()
            job = pipeline.jobs.jobs["ord_21"]
            assert result.processed == 1
            assert result.retried == 1
            assert job.status == DeductionJobStatus.PENDING
            assert job.attempts == expected_attempts
            assert "CatalogUnavailableError" in job.last_error

        result = await pipeline.coordinator.run_sweep()
        job = pipeline.jobs.jobs["ord_21"]
        assert result.exhausted == 1
        assert job.status == DeductionJobStatus.EXHAUSTED
        assert job.attempts == 3

        assert (await pipeline.coordinator.run_sweep()).processed == 0
        assert pipeline.jobs.jobs["ord_21"].attempts == 3
        assert len(pipeline.catalog.calls) == 3

        assert len(pipeline.notifier.manual_reviews) == 1
        reviewed_job, error = pipeline.notifier.manual_reviews[0]
        assert reviewed_job.order_id == "ord_21"
        assert isinstance(error, RetryExhaustedError)
        assert error.attempts == 3

    @pytest.mark.asyncio
    async def test_malformed_order_exhausts_immediately(self, pipeline) -> None:
        """Test a structurally invalid order skips the retry budget."""
        await pipeline.coordinator.enqueue("ord_22", [])

        result = await pipeline.coordinator.run_sweep()

        job = pipeline.jobs.jobs["ord_22"]
        assert result.exhausted == 1
        assert job.status == DeductionJobStatus.EXHAUSTED
        assert job.attempts == 1
        assert isinstance(pipeline.notifier.manual_reviews[0][1], MalformedOrderError)

    @pytest.mark.asyncio
    async def test_conflict_retried_on_next_sweep(self, pipeline) -> None:
        """Test a lost compare-and-swap is retried and then succeeds."""
        add_latte_recipe(pipeline, with_beans=True)
        pipeline.stock.add_stock("milk", "1000", "ml")
        pipeline.stock.add_stock("coffee_beans", "1000", "g")

        def concurrent_writer() -> None:
            beans = pipeline.stock.stocks["coffee_beans"]
            pipeline.stock.stocks["coffee_beans"] = beans.model_copy(
                update={"quantity": Decimal("990"), "version": beans.version + 1}
            )

        pipeline.stock.before_write = concurrent_writer
        await pipeline.coordinator.enqueue("ord_23", [{"menu_item_id": "latte"}])

        first = await pipeline.coordinator.run_sweep()
        second = await pipeline.coordinator.run_sweep()

        assert first.retried == 1
        assert second.completed == 1
        assert pipeline.jobs.jobs["ord_23"].attempts == 1
        assert pipeline.stock.quantity("milk") == Decimal("900")
        assert pipeline.stock.quantity("coffee_beans") == Decimal("972")

    @pytest.mark.asyncio
    async def test_stale_claim_is_recovered(self, pipeline, latte_lines) -> None:
        """Test a job left processing by a crashed worker is picked up after the timeout."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "1000", "ml")
        await pipeline.coordinator.enqueue("ord_24", latte_lines)

        pipeline.jobs.claim_job("ord_24", pipeline.clock(), pipeline.clock())

        assert (await pipeline.coordinator.run_sweep()).processed == 0

        pipeline.clock.advance(301)
        result = await pipeline.coordinator.run_sweep()

        job = pipeline.jobs.jobs["ord_24"]
        assert result.completed == 1
        assert job.status == DeductionJobStatus.COMPLETED
        assert job.attempts == 1
        assert job.last_error == ABANDONED_CLAIM_ERROR
        assert pipeline.stock.quantity("milk") == Decimal("700")

    @pytest.mark.asyncio
    async def test_manual_retry_after_exhaustion(self, pipeline, latte_lines) -> None:
        """Test staff can give an exhausted job a fresh budget once the cause is fixed."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "1000", "ml")
        pipeline.catalog.unavailable = True
        await pipeline.coordinator.enqueue("ord_25", latte_lines)
        for _ in range(3):
            await pipeline.coordinator.run_sweep()
        assert pipeline.jobs.jobs["ord_25"].status == DeductionJobStatus.EXHAUSTED

        pipeline.catalog.unavailable = False
        job = await pipeline.coordinator.retry_job("ord_25")

        assert job is not None
        assert job.status == DeductionJobStatus.PENDING
        assert job.attempts == 0

        result = await pipeline.coordinator.run_sweep()
        assert result.completed == 1
        assert pipeline.stock.quantity("milk") == Decimal("700")

    @pytest.mark.asyncio
    async def test_background_worker_processes_queue(self, pipeline, latte_lines) -> None:
        """Test start() sweeps in the background and stop() ends the loop."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "1000", "ml")
        await pipeline.coordinator.enqueue("ord_26", latte_lines)

        pipeline.coordinator.start()
        assert pipeline.coordinator.is_running
        await asyncio.sleep(0.05)
        await pipeline.coordinator.stop()

        assert not pipeline.coordinator.is_running
        assert pipeline.jobs.jobs["ord_26"].status == DeductionJobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_job_that_keeps_killing_its_worker_is_exhausted(
        self, pipeline, latte_lines, monkeypatch
    ) -> None:
        """Test a job whose run never finishes uses up its attempts through stale takeovers."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "1000", "ml")
        await pipeline.coordinator.enqueue("ord_28", latte_lines)

        runs = 0

        async def dies_mid_run(order_id, order_lines):
            nonlocal runs
            runs += 1
            raise asyncio.CancelledError()

        monkeypatch.setattr(pipeline.executor, "execute", dies_mid_run)

        for _ in range(10):
            with contextlib.suppress(asyncio.CancelledError):
                await pipeline.coordinator.run_sweep()
            pipeline.clock.advance(301)

        job = pipeline.jobs.jobs["ord_28"]
        assert job.status == DeductionJobStatus.EXHAUSTED
        assert job.attempts == 3
        assert job.last_error == ABANDONED_CLAIM_ERROR
        assert runs == 3
        assert pipeline.stock.quantity("milk") == Decimal("1000")

        assert len(pipeline.notifier.manual_reviews) == 1
        reviewed_job, error = pipeline.notifier.manual_reviews[0]
        assert reviewed_job.order_id == "ord_28"
        assert isinstance(error, RetryExhaustedError)
        assert error.attempts == 3

    @pytest.mark.asyncio
    async def test_event_loop_stays_responsive_during_slow_store_writes(
        self, pipeline, latte_lines
    ) -> None:
        """Test a slow stock write in the background worker does not stall other coroutines."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "1000", "ml")
        await pipeline.coordinator.enqueue("ord_29", latte_lines)

        writing = threading.Event()
        decrement_many = pipeline.stock.decrement_many

        def slow_decrement_many(*args, **kwargs):
            writing.set()
            time.sleep(0.2)
            return decrement_many(*args, **kwargs)

        pipeline.stock.decrement_many = slow_decrement_many

        pipeline.coordinator.start()
        try:
            assert await asyncio.to_thread(writing.wait, 1)

            loop = asyncio.get_running_loop()
            started = loop.time()
            await asyncio.sleep(0.01)
            assert loop.time() - started < 0.1
        finally:
            await pipeline.coordinator.stop()

        assert pipeline.jobs.jobs["ord_29"].status == DeductionJobStatus.COMPLETED
        assert pipeline.stock.quantity("milk") == Decimal("700")

    @pytest.mark.asyncio
    async def test_cleanup_keeps_ledger_as_idempotency_evidence(self, pipeline, latte_lines) -> None:
        """Test a cleaned-up order is still not deducted twice."""
        add_latte_recipe(pipeline)
        pipeline.stock.add_stock("milk", "1000", "ml")
        await pipeline.coordinator.enqueue("ord_27", latte_lines)
        await pipeline.coordinator.run_sweep()

        pipeline.clock.advance(8 * 24 * 3600)
        assert await pipeline.coordinator.cleanup_completed_jobs(days_to_keep=7) == 1

        assert await pipeline.coordinator.enqueue("ord_27", latte_lines) is True
        result = await pipeline.coordinator.run_sweep()

        assert result.completed == 1
        assert pipeline.stock.quantity("milk") == Decimal("700")
        assert len(pipeline.stock.list_for_order("ord_27")) == 1
