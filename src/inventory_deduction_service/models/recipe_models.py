"""Recipe catalog models.

Recipes are owned by the menu/catalog service; this service only reads them.
"""

from decimal import Decimal

from pydantic import BaseModel, Field, model_validator


class CustomizationOverride(BaseModel):
    """Replacement quantity (or omission) for a component when a customization is selected."""

    option: str = Field(..., min_length=1, description="Customization option name (e.g. 'size')")
    value: str = Field(..., description="Selected value that triggers the override (e.g. 'large')")
    quantity: Decimal | None = Field(None, ge=0, description="Replacement per-unit quantity")
    omit: bool = Field(default=False, description="Skip the component entirely")

    @model_validator(mode="after")
    def validate_effect(self) -> "CustomizationOverride":
        """An override either omits the component or replaces its quantity, never both."""
        if self.omit and self.quantity is not None:
            raise ValueError("override cannot both omit and replace quantity")
        if not self.omit and self.quantity is None:
            raise ValueError("override must set a quantity or omit")
        return self

    def matches(self, customizations: dict[str, str]) -> bool:
        """Check whether a line's normalized customization map selects this override."""
        selected = customizations.get(self.option.strip().lower())
        return selected is not None and selected == self.value.strip().lower()


class RecipeComponent(BaseModel):
    """One ingredient consumed by a menu item."""

    ingredient_id: str = Field(..., min_length=1, description="Ingredient identifier")
    base_quantity: Decimal = Field(..., ge=0, description="Per-unit quantity")
    unit: str = Field(..., min_length=1, description="Unit of base_quantity")
    is_optional: bool = Field(default=False, description="Consumed only when a customization opts in")
    customization_overrides: list[CustomizationOverride] = Field(default_factory=list)

    def override_for(self, customizations: dict[str, str]) -> CustomizationOverride | None:
        """Return the first override selected by the customizations, if any."""
        for override in self.customization_overrides:
            if override.matches(customizations):
                return override
        return None


class Recipe(BaseModel):
    """Recipe for a single menu item."""

    menu_item_id: str = Field(..., description="Menu item identifier")
    components: list[RecipeComponent] = Field(default_factory=list)

    @property
    def has_required_components(self) -> bool:
        """Whether at least one component is consumed unconditionally."""
        return any(not component.is_optional for component in self.components)
