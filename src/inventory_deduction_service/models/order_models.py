"""Order line models.

Orders arrive from several sources (POS, customer app, guest checkout, repair
scripts) that never agreed on key names. Everything is funnelled through
``OrderLine`` here so the rest of the pipeline sees exactly one shape.
"""

from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from inventory_deduction_service.errors import MalformedOrderError


def _coerce_identifier(value: Any) -> Any:
    """Accept numeric ids from legacy payloads."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


def _normalize_token(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        raise ValueError("customization values must be scalars")
    return str(value).strip().lower()


class ExtraIngredient(BaseModel):
    """Additive ingredient amount requested on top of the recipe (e.g. an extra shot)."""

    ingredient_id: str = Field(
        ...,
        min_length=1,
        description="Ingredient identifier",
        validation_alias=AliasChoices("ingredient_id", "ingredientId", "id"),
    )
    quantity: Decimal = Field(
        ...,
        gt=0,
        description="Amount per ordered unit",
        validation_alias=AliasChoices("quantity", "amount"),
    )
    unit: str | None = Field(None, description="Unit of the amount; defaults to the recipe unit")

    @field_validator("ingredient_id", mode="before")
    @classmethod
    def coerce_ingredient_id(cls, v: Any) -> Any:
        """Convert numeric ingredient ids to strings."""
        return _coerce_identifier(v)


class OrderLine(BaseModel):
    """A paid line item: menu item, quantity and customization choices."""

    menu_item_id: str = Field(
        ...,
        min_length=1,
        description="Menu item identifier",
        validation_alias=AliasChoices("menu_item_id", "menuItemId"),
    )
    quantity: int = Field(default=1, gt=0, description="Number of units ordered")
    customizations: dict[str, str] = Field(
        default_factory=dict, description="Option name to selected value"
    )
    extras: list[ExtraIngredient] = Field(
        default_factory=list,
        description="Additive per-unit ingredient amounts",
        validation_alias=AliasChoices("extras", "extraIngredients"),
    )
    name: str | None = Field(None, description="Display name, informational only")

    @field_validator("menu_item_id", mode="before")
    @classmethod
    def coerce_menu_item_id(cls, v: Any) -> Any:
        """Convert numeric menu item ids to strings."""
        return _coerce_identifier(v)

    @field_validator("customizations", mode="before")
    @classmethod
    def normalize_customizations(cls, v: Any) -> dict[str, str]:
        """Normalize customization payloads into a lower-cased option -> value map.

        A list of bare option names (``["extra_shot"]``) or of ``{"type": ...}``
        entries is treated as a set of enabled flags.
        """
        if v is None:
            return {}

        if isinstance(v, list):
            flags: dict[str, Any] = {}
            for entry in v:
                if isinstance(entry, str):
                    flags[entry] = True
                elif isinstance(entry, dict) and (entry.get("type") or entry.get("name")):
                    flags[entry.get("type") or entry["name"]] = entry.get("value", True)
                else:
                    raise ValueError(f"unsupported customization entry: {entry!r}")
            v = flags

        if not isinstance(v, dict):
            raise ValueError("customizations must be a mapping of option to value")

        normalized: dict[str, str] = {}
        for key, value in v.items():
            option = _normalize_token(key)
            if not option:
                raise ValueError("customization option names must not be empty")
            normalized[option] = _normalize_token(value)
        return normalized


def parse_order_lines(payload: Any, order_id: str | None = None) -> list[OrderLine]:
    """Validate raw line items into ``OrderLine`` models.

    Args:
        payload: Sequence of ``OrderLine`` objects or raw dictionaries
        order_id: Order the lines belong to, for error reporting

    Returns:
        list: Validated order lines

    Raises:
        MalformedOrderError: If the payload is not a non-empty list of valid lines
    """
    if isinstance(payload, str | bytes) or not isinstance(payload, Sequence):
        raise MalformedOrderError("Order lines must be a list", order_id=order_id)

    if len(payload) == 0:
        raise MalformedOrderError("Order has no lines", order_id=order_id)

    lines: list[OrderLine] = []
    for index, raw in enumerate(payload):
        if isinstance(raw, OrderLine):
            lines.append(raw)
            continue

        if not isinstance(raw, dict):
            raise MalformedOrderError(
                f"Line {index} is not an object", order_id=order_id, details={"line": index}
            )

        try:
            lines.append(OrderLine.model_validate(raw))
        except ValidationError as e:
            raise MalformedOrderError(
                f"Line {index} is invalid: {e.error_count()} validation error(s)",
                order_id=order_id,
                details={"line": index, "errors": [err["msg"] for err in e.errors()]},
            ) from e

    return lines


def serialize_order_lines(order_lines: Sequence[OrderLine | dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert order lines into JSON-compatible dictionaries for job payloads.

    Raw dictionaries are stored untouched so that malformed input is still
    visible to staff in the manual review view.
    """
    serialized: list[dict[str, Any]] = []
    for line in order_lines:
        if isinstance(line, OrderLine):
            serialized.append(line.model_dump(mode="json", exclude_none=True))
        else:
            serialized.append(line)
    return serialized
