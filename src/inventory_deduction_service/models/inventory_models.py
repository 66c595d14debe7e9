"""Ingredient stock, ledger and alert models.

These models represent the inventory tables for DynamoDB storage and retrieval.
Quantities are kept as ``Decimal`` end to end because DynamoDB numbers map to
``Decimal`` in boto3 and floats would drift across repeated deductions.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class IngredientStock(BaseModel):
    """Current stock level for one ingredient.

    Stored in DynamoDB with ingredient_id as partition key. ``version`` is the
    optimistic-lock counter bumped by every ledger write.
    """

    ingredient_id: str = Field(..., description="Ingredient identifier")
    name: str | None = Field(None, description="Display name")
    quantity: Decimal = Field(..., description="Current quantity, may be negative after overselling")
    unit: str = Field(..., description="Unit the quantity is tracked in")
    reorder_threshold: Decimal = Field(default=Decimal("0"), ge=0, description="Reorder level")
    version: int = Field(default=0, ge=0, description="Optimistic lock version")
    updated_at: datetime | None = Field(None, description="Last ledger write")

    @property
    def is_low_stock(self) -> bool:
        """Whether the quantity is at or below the reorder threshold."""
        return self.quantity <= self.reorder_threshold

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format.

        Returns:
            dict: DynamoDB-compatible representation
        """
        item: dict[str, Any] = {
            "ingredient_id": self.ingredient_id,
            "quantity": self.quantity,
            "unit": self.unit,
            "reorder_threshold": self.reorder_threshold,
            "version": self.version,
        }

        if self.name is not None:
            item["name"] = self.name

        if self.updated_at is not None:
            item["updated_at"] = self.updated_at.isoformat()

        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "IngredientStock":
        """Create IngredientStock from DynamoDB item.

        Args:
            item: DynamoDB item dictionary

        Returns:
            IngredientStock: Parsed model instance
        """
        data: dict[str, Any] = {
            "ingredient_id": item["ingredient_id"],
            "quantity": Decimal(str(item["quantity"])),
            "unit": item["unit"],
            "reorder_threshold": Decimal(str(item.get("reorder_threshold", 0))),
            "version": int(item.get("version", 0)),
        }

        if "name" in item:
            data["name"] = item["name"]

        if "updated_at" in item:
            data["updated_at"] = datetime.fromisoformat(item["updated_at"])

        return cls(**data)


class InventoryTransaction(BaseModel):
    """Append-only ledger row recording one ingredient change caused by one order.

    Stored in DynamoDB with (order_id, ingredient_id) as composite key, which is
    what makes a second row for the same pair impossible.
    """

    order_id: str = Field(..., description="Order that caused the change")
    ingredient_id: str = Field(..., description="Ingredient that changed")
    delta: Decimal = Field(..., description="Signed change, negative for consumption")
    previous_quantity: Decimal = Field(..., description="Quantity before the change")
    resulting_quantity: Decimal = Field(..., description="Quantity after the change")
    unit: str = Field(..., description="Unit of all quantities on this row")
    created_at: datetime = Field(..., description="When the change was written")

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format.

        Returns:
            dict: DynamoDB-compatible representation
        """
        return {
            "order_id": self.order_id,
            "ingredient_id": self.ingredient_id,
            "delta": self.delta,
            "previous_quantity": self.previous_quantity,
            "resulting_quantity": self.resulting_quantity,
            "unit": self.unit,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "InventoryTransaction":
        """Create InventoryTransaction from DynamoDB item.

        Args:
            item: DynamoDB item dictionary

        Returns:
            InventoryTransaction: Parsed model instance
        """
        return cls(
            order_id=item["order_id"],
            ingredient_id=item["ingredient_id"],
            delta=Decimal(str(item["delta"])),
            previous_quantity=Decimal(str(item["previous_quantity"])),
            resulting_quantity=Decimal(str(item["resulting_quantity"])),
            unit=item["unit"],
            created_at=datetime.fromisoformat(item["created_at"]),
        )


class LowStockAlert(BaseModel):
    """Raised once when an ingredient crosses its reorder threshold.

    Stored in DynamoDB with (ingredient_id, created_at) as composite key.
    """

    ingredient_id: str = Field(..., description="Ingredient that crossed the threshold")
    observed_quantity: Decimal = Field(..., description="Quantity right after the deduction")
    previous_quantity: Decimal | None = Field(None, description="Quantity before the deduction")
    threshold: Decimal = Field(..., description="Reorder threshold at the time")
    unit: str | None = Field(None, description="Unit of the quantities")
    order_id: str | None = Field(None, description="Order whose deduction caused the crossing")
    created_at: datetime = Field(..., description="Alert creation timestamp")

    @property
    def is_critical(self) -> bool:
        """Whether the ingredient is fully depleted or oversold."""
        return self.observed_quantity <= 0

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format.

        Returns:
            dict: DynamoDB-compatible representation
        """
        item: dict[str, Any] = {
            "ingredient_id": self.ingredient_id,
            "created_at": self.created_at.isoformat(),
            "observed_quantity": self.observed_quantity,
            "threshold": self.threshold,
        }

        if self.previous_quantity is not None:
            item["previous_quantity"] = self.previous_quantity

        if self.unit is not None:
            item["unit"] = self.unit

        if self.order_id is not None:
            item["order_id"] = self.order_id

        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "LowStockAlert":
        """Create LowStockAlert from DynamoDB item.

        Args:
            item: DynamoDB item dictionary

        Returns:
            LowStockAlert: Parsed model instance
        """
        data: dict[str, Any] = {
            "ingredient_id": item["ingredient_id"],
            "created_at": datetime.fromisoformat(item["created_at"]),
            "observed_quantity": Decimal(str(item["observed_quantity"])),
            "threshold": Decimal(str(item["threshold"])),
        }

        if "previous_quantity" in item:
            data["previous_quantity"] = Decimal(str(item["previous_quantity"]))

        if "unit" in item:
            data["unit"] = item["unit"]

        if "order_id" in item:
            data["order_id"] = item["order_id"]

        return cls(**data)


@dataclass
class StockMutation:
    """One ingredient's part of an atomic ledger write.

    Attributes:
        ingredient_id: Ingredient being decremented
        delta: Signed change in the stock unit (negative for consumption)
        previous_quantity: Quantity read before the write
        resulting_quantity: Quantity to store
        unit: Stock unit
        expected_version: Version read before the write, checked on commit
    """

    ingredient_id: str
    delta: Decimal
    previous_quantity: Decimal
    resulting_quantity: Decimal
    unit: str
    expected_version: int
