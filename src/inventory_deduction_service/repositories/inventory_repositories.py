"""DynamoDB repositories for ingredient stock, the inventory ledger and low-stock alerts.

The deduction path (stock reads, the atomic decrement, the idempotency check)
raises ``LedgerError`` subclasses so the queue can decide whether to retry.
Reporting reads follow the usual pattern of logging and returning an empty
result, since an admin view should degrade rather than fail.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table

from inventory_deduction_service.errors import (
    LedgerConflictError,
    LedgerError,
    StorageUnavailableError,
)
from inventory_deduction_service.models.inventory_models import (
    IngredientStock,
    InventoryTransaction,
    LowStockAlert,
    StockMutation,
)

logger = logging.getLogger(__name__)

INGREDIENT_INDEX = "ingredient_id-index"

# DynamoDB caps a single transaction at 100 actions; each ingredient takes two.
MAX_INGREDIENTS_PER_WRITE = 50

_CONFLICT_REASONS = {"ConditionalCheckFailed", "TransactionConflict"}
_TRANSIENT_REASONS = {"ThrottlingError", "ProvisionedThroughputExceeded", "RequestLimitExceeded"}
_TRANSIENT_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionInProgressException",
}


def translate_write_error(error: ClientError, order_id: str | None = None) -> LedgerError:
    """Map a DynamoDB write failure onto the ledger error taxonomy.

    Args:
        error: ClientError raised by the transactional write
        order_id: Order being deducted, for error reporting

    Returns:
        LedgerError: Conflict for lost compare-and-swaps, StorageUnavailable for
        throttling and service faults, plain LedgerError otherwise
    """
    code = error.response.get("Error", {}).get("Code", "")
    message = error.response.get("Error", {}).get("Message", str(error))

    if code == "TransactionCanceledException":
        reasons = {
            reason.get("Code")
            for reason in error.response.get("CancellationReasons", [])
            if reason.get("Code") not in (None, "None")
        }
        details = {"cancellation_reasons": sorted(reasons)}
        if reasons & _CONFLICT_REASONS:
            return LedgerConflictError(
                "Stock changed concurrently, deduction not applied",
                order_id=order_id,
                details=details,
            )
        if reasons & _TRANSIENT_REASONS:
            return StorageUnavailableError(
                "Stock write throttled", order_id=order_id, details=details
            )
        return LedgerError(f"Stock write cancelled: {message}", order_id=order_id, details=details)

    if code == "TransactionConflictException":
        return LedgerConflictError(message, order_id=order_id)

    if code in _TRANSIENT_CODES or error.response.get("ResponseMetadata", {}).get(
        "HTTPStatusCode", 0
    ) >= 500:
        return StorageUnavailableError(message, order_id=order_id, details={"code": code})

    return LedgerError(f"Stock write failed ({code}): {message}", order_id=order_id)


class IngredientStockRepository:
    """Repository for ingredient stock levels and the atomic ledger write.

    Stock rows live in one table keyed by ingredient_id; the ledger rows written
    alongside every decrement live in the transactions table.
    """

    def __init__(
        self,
        dynamodb_resource: DynamoDBServiceResource,
        table_name: str,
        transactions_table_name: str,
    ) -> None:
        """Initialize repository.

        Args:
            dynamodb_resource: Boto3 DynamoDB resource
            table_name: Name of the stock table
            transactions_table_name: Name of the inventory transactions table
        """
        self.dynamodb = dynamodb_resource
        self.table_name = table_name
        self.transactions_table_name = transactions_table_name
        self.table: Table = dynamodb_resource.Table(table_name)

    def get_stock(self, ingredient_id: str) -> IngredientStock | None:
        """Retrieve the current stock row for an ingredient.

        Args:
            ingredient_id: Ingredient identifier

        Returns:
            IngredientStock if found, None otherwise

        Raises:
            StorageUnavailableError: If the read could not be performed
        """
        try:
            response = self.table.get_item(
                Key={"ingredient_id": ingredient_id}, ConsistentRead=True
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(f"Failed to read stock for {ingredient_id}: {e}") from e

        if "Item" not in response:
            return None

        return IngredientStock.from_dynamodb_item(response["Item"])

    def get_stocks(self, ingredient_ids: Iterable[str]) -> dict[str, IngredientStock]:
        """Retrieve stock rows for several ingredients.

        Reads are strongly consistent so the versions returned are the ones the
        following decrement will be checked against.

        Args:
            ingredient_ids: Ingredient identifiers

        Returns:
            dict: ingredient_id to IngredientStock, missing ingredients omitted
        """
        stocks: dict[str, IngredientStock] = {}
        for ingredient_id in dict.fromkeys(ingredient_ids):
            stock = self.get_stock(ingredient_id)
            if stock is not None:
                stocks[ingredient_id] = stock
        return stocks

    def list_low_stock(self) -> list[IngredientStock]:
        """List ingredients at or below their reorder threshold.

        Returns:
            list: Low-stock ingredients sorted by ingredient_id
        """
        stocks: list[IngredientStock] = []
        scan_args: dict[str, Any] = {
            "FilterExpression": "#quantity <= #threshold",
            "ExpressionAttributeNames": {
                "#quantity": "quantity",
                "#threshold": "reorder_threshold",
            },
        }

        try:
            while True:
                response = self.table.scan(**scan_args)
                stocks.extend(
                    IngredientStock.from_dynamodb_item(item) for item in response.get("Items", [])
                )
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                scan_args["ExclusiveStartKey"] = last_key

        except ClientError as e:
            logger.error(f"Failed to list low stock: {e}")  # pragma: no cover
            return []

        return sorted(stocks, key=lambda stock: stock.ingredient_id)

    def decrement_many(
        self, order_id: str, mutations: list[StockMutation], now: datetime
    ) -> list[InventoryTransaction]:
        """Apply every stock change for an order and write its ledger rows in one transaction.

        Each stock update is guarded by the version read beforehand and each
        ledger row by the absence of an existing (order_id, ingredient_id) row,
        so the whole write is rejected if anything moved underneath it.

        Args:
            order_id: Order being deducted
            mutations: One mutation per ingredient
            now: Timestamp recorded on stock and ledger rows

        Returns:
            list: Ledger rows written, in mutation order

        Raises:
            LedgerConflictError: If a version check or ledger uniqueness check failed
            StorageUnavailableError: If the store throttled or could not be reached
            LedgerError: For any other rejected write
        """
        if not mutations:
            return []

        if len(mutations) > MAX_INGREDIENTS_PER_WRITE:
            raise LedgerError(
                f"Order touches {len(mutations)} ingredients, "
                f"more than {MAX_INGREDIENTS_PER_WRITE} cannot be written atomically",
                order_id=order_id,
            )

        timestamp = now.isoformat()
        transactions: list[InventoryTransaction] = []
        items: list[dict[str, Any]] = []

        for mutation in mutations:
            transaction = InventoryTransaction(
                order_id=order_id,
                ingredient_id=mutation.ingredient_id,
                delta=mutation.delta,
                previous_quantity=mutation.previous_quantity,
                resulting_quantity=mutation.resulting_quantity,
                unit=mutation.unit,
                created_at=now,
            )
            transactions.append(transaction)

            version_check = "#version = :expected"
            if mutation.expected_version == 0:
                version_check = "(attribute_not_exists(#version) OR #version = :expected)"

            items.append(
                {
                    "Update": {
                        "TableName": self.table_name,
                        "Key": {"ingredient_id": mutation.ingredient_id},
                        "UpdateExpression": (
                            "SET #quantity = :resulting, #version = :next, updated_at = :now"
                        ),
                        "ConditionExpression": f"attribute_exists(ingredient_id) AND {version_check}",
                        "ExpressionAttributeNames": {"#quantity": "quantity", "#version": "version"},
                        "ExpressionAttributeValues": {
                            ":resulting": mutation.resulting_quantity,
                            ":expected": mutation.expected_version,
                            ":next": mutation.expected_version + 1,
                            ":now": timestamp,
                        },
                    }
                }
            )
            items.append(
                {
                    "Put": {
                        "TableName": self.transactions_table_name,
                        "Item": transaction.to_dynamodb_item(),
                        "ConditionExpression": "attribute_not_exists(order_id)",
                    }
                }
            )

        try:
            self.dynamodb.meta.client.transact_write_items(TransactItems=items)
        except ClientError as e:
            raise translate_write_error(e, order_id=order_id) from e
        except BotoCoreError as e:
            raise StorageUnavailableError(
                f"Stock store unreachable: {e}", order_id=order_id
            ) from e

        return transactions


class InventoryTransactionRepository:
    """Repository for the append-only inventory ledger.

    Rows are keyed by (order_id, ingredient_id) with a GSI on
    (ingredient_id, created_at) for per-ingredient history.
    """

    def __init__(self, dynamodb_resource: DynamoDBServiceResource, table_name: str) -> None:
        """Initialize repository.

        Args:
            dynamodb_resource: Boto3 DynamoDB resource
            table_name: Name of the DynamoDB table
        """
        self.dynamodb = dynamodb_resource
        self.table_name = table_name
        self.table: Table = dynamodb_resource.Table(table_name)

    def has_transactions(self, order_id: str) -> bool:
        """Check whether any ledger row exists for an order.

        Args:
            order_id: Order identifier

        Returns:
            bool: True if the order has already been deducted

        Raises:
            StorageUnavailableError: If the query could not be performed
        """
        try:
            response = self.table.query(
                KeyConditionExpression="order_id = :order_id",
                ExpressionAttributeValues={":order_id": order_id},
                Limit=1,
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(
                f"Failed to check ledger for order: {e}", order_id=order_id
            ) from e

        return len(response.get("Items", [])) > 0

    def list_for_order(self, order_id: str) -> list[InventoryTransaction]:
        """Get all ledger rows written for an order.

        Args:
            order_id: Order identifier

        Returns:
            list: Ledger rows sorted by ingredient_id
        """
        try:
            response = self.table.query(
                KeyConditionExpression="order_id = :order_id",
                ExpressionAttributeValues={":order_id": order_id},
            )
            return [
                InventoryTransaction.from_dynamodb_item(item) for item in response.get("Items", [])
            ]

        except ClientError as e:
            logger.error(f"Failed to list transactions for order: {e}")  # pragma: no cover
            return []

    def list_for_ingredient(self, ingredient_id: str, limit: int = 50) -> list[InventoryTransaction]:
        """Get the most recent ledger rows for an ingredient.

        Args:
            ingredient_id: Ingredient identifier
            limit: Maximum number of rows to return

        Returns:
            list: Ledger rows, newest first
        """
        try:
            response = self.table.query(
                IndexName=INGREDIENT_INDEX,
                KeyConditionExpression="ingredient_id = :ingredient_id",
                ExpressionAttributeValues={":ingredient_id": ingredient_id},
                ScanIndexForward=False,
                Limit=limit,
            )
            return [
                InventoryTransaction.from_dynamodb_item(item) for item in response.get("Items", [])
            ]

        except ClientError as e:
            logger.error(f"Failed to list transactions for ingredient: {e}")  # pragma: no cover
            return []


class LowStockAlertRepository:
    """Repository for low-stock alerts.

    Manages alerts in DynamoDB with composite key (ingredient_id, created_at).
    """

    def __init__(self, dynamodb_resource: DynamoDBServiceResource, table_name: str) -> None:
        """Initialize repository.

        Args:
            dynamodb_resource: Boto3 DynamoDB resource
            table_name: Name of the DynamoDB table
        """
        self.dynamodb = dynamodb_resource
        self.table_name = table_name
        self.table: Table = dynamodb_resource.Table(table_name)

    def save_alert(self, alert: LowStockAlert) -> bool:
        """Save a low-stock alert.

        Args:
            alert: LowStockAlert to save

        Returns:
            bool: True if save succeeded, False otherwise
        """
        try:
            self.table.put_item(Item=alert.to_dynamodb_item())
            return True

        except ClientError as e:
            logger.error(f"Failed to save low-stock alert: {e}")  # pragma: no cover
            return False

    def list_for_ingredient(self, ingredient_id: str, limit: int = 20) -> list[LowStockAlert]:
        """Get recent alerts for an ingredient.

        Args:
            ingredient_id: Ingredient identifier
            limit: Maximum number of alerts to return

        Returns:
            list: Alerts, newest first
        """
        try:
            response = self.table.query(
                KeyConditionExpression="ingredient_id = :ingredient_id",
                ExpressionAttributeValues={":ingredient_id": ingredient_id},
                ScanIndexForward=False,
                Limit=limit,
            )
            return [LowStockAlert.from_dynamodb_item(item) for item in response.get("Items", [])]

        except ClientError as e:
            logger.error(f"Failed to list alerts for ingredient: {e}")  # pragma: no cover
            return []

    def list_recent(self, limit: int = 50) -> list[LowStockAlert]:
        """Get the most recent alerts across all ingredients.

        Args:
            limit: Maximum number of alerts to return

        Returns:
            list: Alerts, newest first
        """
        alerts: list[LowStockAlert] = []
        scan_args: dict[str, Any] = {}

        try:
            while True:
                response = self.table.scan(**scan_args)
                alerts.extend(
                    LowStockAlert.from_dynamodb_item(item) for item in response.get("Items", [])
                )
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                scan_args["ExclusiveStartKey"] = last_key

        except ClientError as e:
            logger.error(f"Failed to list alerts: {e}")  # pragma: no cover
            return []

        alerts.sort(key=lambda alert: alert.created_at, reverse=True)
        return alerts[:limit]
