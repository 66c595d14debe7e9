"""Client for reading recipes from the Recipe Catalog API."""

import logging

import httpx
from pydantic import ValidationError

from inventory_deduction_service.errors import CatalogUnavailableError
from inventory_deduction_service.models.recipe_models import Recipe

logger = logging.getLogger(__name__)


class RecipeCatalogClient:
    """HTTP client for fetching recipes from the catalog service.

    Recipes are read-only here. A missing recipe is a normal answer (``None``);
    every other failure raises ``CatalogUnavailableError`` so the deduction is
    retried instead of silently deducting nothing.
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = 5.0) -> None:
        """Initialize the Recipe Catalog client.

        Args:
            base_url: Base URL of the catalog API (e.g., "https://catalog.example.com")
            api_key: API key for service-to-service authentication
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def get_recipe(self, menu_item_id: str) -> Recipe | None:
        """Fetch the recipe for a menu item.

        Args:
            menu_item_id: Menu item to fetch the recipe for

        Returns:
            Recipe if the item has one, None if the catalog reports 404

        Raises:
            CatalogUnavailableError: On transport errors, non-404 error responses
                or a response body that is not a valid recipe
        """
        url = f"{self.base_url}/menu-items/{menu_item_id}/recipe"
        headers = {"X-API-Key": self.api_key}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=headers)

                if response.status_code == 404:
                    logger.info(f"No recipe in catalog for menu item {menu_item_id}")
                    return None

                response.raise_for_status()
                data = response.json()

        except (httpx.HTTPStatusError, httpx.RequestError) as e:
            logger.error(f"Failed to fetch recipe for menu item {menu_item_id}: {e}")  # pragma: no cover
            raise CatalogUnavailableError(
                f"Recipe catalog request failed for menu item {menu_item_id}",
                details={"menu_item_id": menu_item_id, "reason": str(e)},
            ) from e
        except ValueError as e:
            raise CatalogUnavailableError(
                f"Recipe catalog returned invalid JSON for menu item {menu_item_id}",
                details={"menu_item_id": menu_item_id},
            ) from e

        if isinstance(data, dict) and "recipe" in data:
            data = data["recipe"]

        try:
            if isinstance(data, list):
                return Recipe(menu_item_id=menu_item_id, components=data)
            data.setdefault("menu_item_id", menu_item_id)
            return Recipe.model_validate(data)

        except (ValidationError, AttributeError) as e:
            raise CatalogUnavailableError(
                f"Recipe catalog returned an invalid recipe for menu item {menu_item_id}",
                details={"menu_item_id": menu_item_id, "reason": str(e)},
            ) from e
