"""Recipe resolution: turn paid order lines into net ingredient consumption."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from inventory_deduction_service.errors import MalformedOrderError
from inventory_deduction_service.models.order_models import OrderLine
from inventory_deduction_service.models.recipe_models import Recipe, RecipeComponent
from inventory_deduction_service.services.recipe_catalog_client import RecipeCatalogClient
from inventory_deduction_service.services.unit_conversion import canonical_unit, convert

logger = logging.getLogger(__name__)


class ResolutionWarningKind(str, Enum):
    """Non-blocking data-quality conditions found while resolving an order."""

    MISSING_RECIPE = "missing_recipe"
    NO_REQUIRED_COMPONENTS = "no_required_components"


@dataclass
class ResolutionWarning:
    """A data-quality condition that did not stop resolution.

    Attributes:
        kind: What was wrong
        menu_item_id: Menu item the condition applies to
        line_index: Position of the first affected line in the order
        message: Human-readable description
    """

    kind: ResolutionWarningKind
    menu_item_id: str
    line_index: int
    message: str


@dataclass
class IngredientDelta:
    """Net amount of one ingredient consumed by an order.

    Attributes:
        ingredient_id: Ingredient identifier
        quantity: Amount consumed, always positive
        unit: Unit of ``quantity``
    """

    ingredient_id: str
    quantity: Decimal
    unit: str


@dataclass
class ResolvedDeltas:
    """Result of resolving an order.

    Attributes:
        deltas: One entry per consumed ingredient, sorted by ingredient_id
        warnings: Non-blocking conditions found during resolution
    """

    deltas: list[IngredientDelta] = field(default_factory=list)
    warnings: list[ResolutionWarning] = field(default_factory=list)

    @property
    def missing_recipes(self) -> list[str]:
        """Menu items that had no recipe and so contributed nothing."""
        return [
            warning.menu_item_id
            for warning in self.warnings
            if warning.kind == ResolutionWarningKind.MISSING_RECIPE
        ]

    @property
    def is_partial(self) -> bool:
        """Whether some lines were skipped for lack of a recipe."""
        return bool(self.missing_recipes)


class RecipeResolver:
    """Resolves order lines into aggregated ingredient deltas.

    Only reads recipe data. Stock levels are never consulted, so the same
    order always resolves to the same deltas for the same catalog contents.
    """

    def __init__(self, recipe_catalog: RecipeCatalogClient) -> None:
        """Initialize the resolver.

        Args:
            recipe_catalog: Source of recipes by menu item
        """
        self.recipe_catalog = recipe_catalog

    async def resolve(self, order_lines: Sequence[OrderLine]) -> ResolvedDeltas:
        """Resolve an order's lines into net ingredient deltas.

        Args:
            order_lines: Validated order lines

        Returns:
            ResolvedDeltas with one delta per ingredient and any warnings

        Raises:
            MalformedOrderError: If the order has no lines or an extra has no usable unit
            CatalogUnavailableError: If recipes could not be loaded
            UnitConversionError: If quantities for one ingredient use incompatible units
        """
        if not order_lines:
            raise MalformedOrderError("Order has no lines")

        recipes = await self._load_recipes(order_lines)

        totals: dict[str, IngredientDelta] = {}
        warnings: list[ResolutionWarning] = []
        warned: set[tuple[ResolutionWarningKind, str]] = set()

        for index, line in enumerate(order_lines):
            recipe = recipes.get(line.menu_item_id)

            if recipe is None:
                self._warn(
                    warnings,
                    warned,
                    ResolutionWarningKind.MISSING_RECIPE,
                    line.menu_item_id,
                    index,
                    f"No recipe for menu item {line.menu_item_id}; stock not deducted for it",
                )
            else:
                if not recipe.has_required_components:
                    self._warn(
                        warnings,
                        warned,
                        ResolutionWarningKind.NO_REQUIRED_COMPONENTS,
                        line.menu_item_id,
                        index,
                        f"Recipe for menu item {line.menu_item_id} has no required components",
                    )

                for component in recipe.components:
                    per_unit = self._component_quantity(component, line.customizations)
                    if per_unit:
                        self._accumulate(
                            totals, component.ingredient_id, per_unit * line.quantity, component.unit
                        )

            for extra in line.extras:
                unit = extra.unit or self._recipe_unit(recipe, extra.ingredient_id)
                if unit is None:
                    raise MalformedOrderError(
                        f"Extra {extra.ingredient_id} on line {index} has no unit",
                        details={"line": index, "ingredient_id": extra.ingredient_id},
                    )
                self._accumulate(totals, extra.ingredient_id, extra.quantity * line.quantity, unit)

        deltas = [
            delta
            for delta in sorted(totals.values(), key=lambda delta: delta.ingredient_id)
            if delta.quantity > 0
        ]

        return ResolvedDeltas(deltas=deltas, warnings=warnings)

    async def _load_recipes(self, order_lines: Sequence[OrderLine]) -> dict[str, Recipe | None]:
        """Fetch each distinct menu item's recipe once."""
        menu_item_ids = list(dict.fromkeys(line.menu_item_id for line in order_lines))
        recipes = await asyncio.gather(
            *(self.recipe_catalog.get_recipe(menu_item_id) for menu_item_id in menu_item_ids)
        )
        return dict(zip(menu_item_ids, recipes, strict=True))

    @staticmethod
    def _component_quantity(
        component: RecipeComponent, customizations: dict[str, str]
    ) -> Decimal:
        override = component.override_for(customizations)

        if override is not None:
            return Decimal("0") if override.omit else override.quantity or Decimal("0")

        if component.is_optional:
            return Decimal("0")

        return component.base_quantity

    @staticmethod
    def _recipe_unit(recipe: Recipe | None, ingredient_id: str) -> str | None:
        if recipe is None:
            return None
        for component in recipe.components:
            if component.ingredient_id == ingredient_id:
                return component.unit
        return None

    @staticmethod
    def _accumulate(
        totals: dict[str, IngredientDelta], ingredient_id: str, quantity: Decimal, unit: str
    ) -> None:
        existing = totals.get(ingredient_id)

        if existing is None:
            target_unit = canonical_unit(unit)
            totals[ingredient_id] = IngredientDelta(
                ingredient_id=ingredient_id,
                quantity=convert(quantity, unit, target_unit, ingredient_id=ingredient_id),
                unit=target_unit,
            )
            return

        existing.quantity += convert(quantity, unit, existing.unit, ingredient_id=ingredient_id)

    @staticmethod
    def _warn(
        warnings: list[ResolutionWarning],
        warned: set[tuple[ResolutionWarningKind, str]],
        kind: ResolutionWarningKind,
        menu_item_id: str,
        line_index: int,
        message: str,
    ) -> None:
        if (kind, menu_item_id) in warned:
            return
        warned.add((kind, menu_item_id))
        logger.warning(message)
        warnings.append(
            ResolutionWarning(
                kind=kind, menu_item_id=menu_item_id, line_index=line_index, message=message
            )
        )
