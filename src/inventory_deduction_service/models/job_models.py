"""Deduction job models for the durable retry queue."""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class DeductionJobStatus(str, Enum):
    """Enumeration of deduction job states.

    A failed attempt is recorded on the job (``attempts``/``last_error``) and the
    job goes straight back to ``pending`` or on to ``exhausted``.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"


class DeductionJob(BaseModel):
    """Queued request to deduct stock for one paid order.

    Stored in DynamoDB with order_id as partition key, so there is at most one
    job per order. A GSI on (status, created_at) drives the sweep.
    """

    order_id: str = Field(..., min_length=1, description="Order identifier")
    payload: list[Any] = Field(
        default_factory=list, description="Line items as received at enqueue time"
    )
    status: DeductionJobStatus = Field(default=DeductionJobStatus.PENDING)
    attempts: int = Field(default=0, ge=0, description="Failed attempts so far")
    last_error: str | None = Field(None, description="Error from the most recent failed attempt")
    created_at: datetime = Field(..., description="Enqueue timestamp")
    updated_at: datetime | None = Field(None, description="Last state change")
    locked_at: datetime | None = Field(None, description="When the current claim was taken")
    completed_at: datetime | None = Field(None, description="When the job reached completed")

    def is_stale(self, stale_before: datetime) -> bool:
        """Check whether a processing claim is older than the stale-lock cut-off.

        Args:
            stale_before: Claims taken before this instant are considered abandoned

        Returns:
            bool: True if the job is processing with an abandoned claim
        """
        return (
            self.status == DeductionJobStatus.PROCESSING
            and self.locked_at is not None
            and self.locked_at < stale_before
        )

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format.

        Returns:
            dict: DynamoDB-compatible representation
        """
        item: dict[str, Any] = {
            "order_id": self.order_id,
            "payload": json.dumps(self.payload, default=str),
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
        }

        if self.last_error is not None:
            item["last_error"] = self.last_error

        if self.updated_at is not None:
            item["updated_at"] = self.updated_at.isoformat()

        if self.locked_at is not None:
            item["locked_at"] = self.locked_at.isoformat()

        if self.completed_at is not None:
            item["completed_at"] = self.completed_at.isoformat()

        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "DeductionJob":
        """Create DeductionJob from DynamoDB item.

        Args:
            item: DynamoDB item dictionary

        Returns:
            DeductionJob: Parsed model instance
        """
        data: dict[str, Any] = {
            "order_id": item["order_id"],
            "payload": json.loads(item.get("payload") or "[]"),
            "status": DeductionJobStatus(item["status"]),
            "attempts": int(item.get("attempts", 0)),
            "created_at": datetime.fromisoformat(item["created_at"]),
        }

        if "last_error" in item:
            data["last_error"] = item["last_error"]

        for field in ("updated_at", "locked_at", "completed_at"):
            if item.get(field):
                data[field] = datetime.fromisoformat(item[field])

        return cls(**data)


class QueueStatus(BaseModel):
    """Snapshot of the deduction queue for the admin dashboard."""

    counts: dict[str, int] = Field(default_factory=dict, description="Jobs per status")
    recent_jobs: list[DeductionJob] = Field(default_factory=list)
    is_running: bool = Field(default=False, description="Whether the sweep loop is active")
