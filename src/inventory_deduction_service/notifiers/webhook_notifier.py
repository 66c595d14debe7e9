"""Webhook notifier implementation.

Posts staff signals as JSON to a configured endpoint (chat webhook, paging
bridge, dashboard ingest).
"""

import logging
from typing import Any

import httpx

from inventory_deduction_service.errors import DeductionError
from inventory_deduction_service.models.inventory_models import LowStockAlert
from inventory_deduction_service.models.job_models import DeductionJob
from inventory_deduction_service.notifiers.base_notifier import Notifier

logger = logging.getLogger(__name__)


class WebhookNotifier(Notifier):
    """Delivers notifications with an HTTP POST per event.

    An optional bearer token is sent in the Authorization header.
    """

    def __init__(self, webhook_url: str, token: str | None = None, timeout: float = 5.0) -> None:
        """Initialize webhook notifier.

        Args:
            webhook_url: Endpoint receiving the JSON payloads
            token: Bearer token for the endpoint, if it requires one
            timeout: Request timeout in seconds
        """
        super().__init__("webhook")
        self.webhook_url = webhook_url
        self.token = token
        self.timeout = timeout

    async def notify_low_stock(self, alert: LowStockAlert) -> bool:
        """Post a low-stock alert.

        Args:
            alert: The alert that was raised

        Returns:
            bool: True if the endpoint accepted it, False otherwise
        """
        payload = {
            "type": "low_stock",
            "severity": "critical" if alert.is_critical else "warning",
            "alert": alert.model_dump(mode="json"),
        }
        return await self._post(payload)

    async def notify_manual_review(self, job: DeductionJob, error: DeductionError) -> bool:
        """Post a manual-review request for an exhausted job.

        Args:
            job: The exhausted job
            error: Why it was exhausted

        Returns:
            bool: True if the endpoint accepted it, False otherwise
        """
        payload = {
            "type": "manual_review",
            "order_id": job.order_id,
            "attempts": job.attempts,
            "error": error.to_dict(),
            "payload": job.payload,
        }
        return await self._post(payload)

    async def _post(self, payload: dict[str, Any]) -> bool:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=payload, headers=headers)

                if response.is_success:
                    return True

                logger.error(f"Notification webhook rejected {payload['type']}: {response.status_code}")
                return False

        except httpx.HTTPError as e:
            logger.error(f"Notification webhook failed: {e}")
            return False
