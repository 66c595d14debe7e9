"""DynamoDB repository for the deduction job queue.

Every state transition is a conditional write, so the table itself is the
lock: a job can only be claimed from ``pending`` (or from an abandoned
``processing`` claim) and only the claim holder can finish it. A lost
condition is an expected outcome and comes back as ``False``/``None``;
anything else the store reports is raised as ``StorageUnavailableError`` so
the caller can tell "someone else got there first" from "we could not ask".
"""

import logging
from datetime import datetime
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table

from inventory_deduction_service.errors import StorageUnavailableError
from inventory_deduction_service.models.job_models import DeductionJob, DeductionJobStatus

logger = logging.getLogger(__name__)

STATUS_INDEX = "status-index"
_STATUS_NAMES = {"#status": "status"}
ABANDONED_CLAIM_ERROR = "AbandonedClaim: worker did not finish before the claim went stale"


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DeductionJobRepository:
    """Repository for deduction job records.

    Manages jobs in DynamoDB with order_id as partition key and a
    (status, created_at) GSI for FIFO selection.
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

    def create_job(self, job: DeductionJob) -> bool:
        """Insert a new pending job unless a live job exists for the order.

        An ``exhausted`` job for the same order is replaced, so a fresh payment
        confirmation can restart an order that staff gave up on.

        Args:
            job: Job to insert

        Returns:
            bool: True if inserted, False if a non-exhausted job already exists

        Raises:
            StorageUnavailableError: If the write could not be performed
        """
        try:
            self.table.put_item(
                Item=job.to_dynamodb_item(),
                ConditionExpression="attribute_not_exists(order_id) OR #status = :exhausted",
                ExpressionAttributeNames=_STATUS_NAMES,
                ExpressionAttributeValues={":exhausted": DeductionJobStatus.EXHAUSTED.value},
            )
            return True

        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise StorageUnavailableError(
                f"Failed to create deduction job: {e}", order_id=job.order_id
            ) from e
        except BotoCoreError as e:
            raise StorageUnavailableError(
                f"Failed to create deduction job: {e}", order_id=job.order_id
            ) from e

    def get_job(self, order_id: str) -> DeductionJob | None:
        """Retrieve the job for an order.

        Args:
            order_id: Order identifier

        Returns:
            DeductionJob if found, None otherwise

        Raises:
            StorageUnavailableError: If the read could not be performed
        """
        try:
            response = self.table.get_item(Key={"order_id": order_id}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(
                f"Failed to get deduction job: {e}", order_id=order_id
            ) from e

        if "Item" not in response:
            return None

        return DeductionJob.from_dynamodb_item(response["Item"])

    def list_jobs_by_status(
        self,
        status: DeductionJobStatus,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[DeductionJob]:
        """List jobs in a status, oldest first unless asked otherwise.

        Args:
            status: Status to list
            limit: Maximum number of jobs to return (all if None)
            newest_first: Return the most recently created jobs first

        Returns:
            list: Matching jobs ordered by created_at

        Raises:
            StorageUnavailableError: If the query could not be performed
        """
        jobs: list[DeductionJob] = []
        query_args: dict[str, Any] = {
            "IndexName": STATUS_INDEX,
            "KeyConditionExpression": "#status = :status",
            "ExpressionAttributeNames": _STATUS_NAMES,
            "ExpressionAttributeValues": {":status": status.value},
            "ScanIndexForward": not newest_first,
        }

        try:
            while True:
                if limit is not None:
                    query_args["Limit"] = limit - len(jobs)
                response = self.table.query(**query_args)
                jobs.extend(DeductionJob.from_dynamodb_item(item) for item in response.get("Items", []))

                last_key = response.get("LastEvaluatedKey")
                if not last_key or (limit is not None and len(jobs) >= limit):
                    break
                query_args["ExclusiveStartKey"] = last_key

        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(f"Failed to list {status.value} jobs: {e}") from e

        return jobs

    def count_by_status(self) -> dict[str, int]:
        """Count jobs per status.

        Returns:
            dict: Status value to job count, zero counts included

        Raises:
            StorageUnavailableError: If a query could not be performed
        """
        counts: dict[str, int] = {}
        for status in DeductionJobStatus:
            query_args: dict[str, Any] = {
                "IndexName": STATUS_INDEX,
                "KeyConditionExpression": "#status = :status",
                "ExpressionAttributeNames": _STATUS_NAMES,
                "ExpressionAttributeValues": {":status": status.value},
                "Select": "COUNT",
            }
            total = 0
            try:
                while True:
                    response = self.table.query(**query_args)
                    total += response.get("Count", 0)
                    last_key = response.get("LastEvaluatedKey")
                    if not last_key:
                        break
                    query_args["ExclusiveStartKey"] = last_key
            except (ClientError, BotoCoreError) as e:
                raise StorageUnavailableError(f"Failed to count {status.value} jobs: {e}") from e
            counts[status.value] = total

        return counts

    def claim_job(
        self, order_id: str, now: datetime, stale_before: datetime
    ) -> DeductionJob | None:
        """Move a job to processing if it is pending or its claim is stale.

        Taking over a stale claim counts the abandoned run as a failed
        attempt in the same write, so a job that keeps killing its worker
        still runs out of retries.

        Args:
            order_id: Order identifier
            now: Claim timestamp
            stale_before: Processing claims older than this may be taken over

        Returns:
            DeductionJob as claimed, or None if another worker holds it

        Raises:
            StorageUnavailableError: If the write could not be performed
        """
        claimed = self._claim(
            order_id,
            "SET #status = :processing, locked_at = :now, updated_at = :now",
            "#status = :pending",
            {
                ":processing": DeductionJobStatus.PROCESSING.value,
                ":pending": DeductionJobStatus.PENDING.value,
                ":now": now.isoformat(),
            },
        )
        if claimed is not None:
            return claimed

        taken_over = self._claim(
            order_id,
            "SET locked_at = :now, updated_at = :now, last_error = :abandoned, "
            "attempts = if_not_exists(attempts, :zero) + :one",
            "#status = :processing AND locked_at < :stale_before",
            {
                ":processing": DeductionJobStatus.PROCESSING.value,
                ":now": now.isoformat(),
                ":stale_before": stale_before.isoformat(),
                ":abandoned": ABANDONED_CLAIM_ERROR,
                ":zero": 0,
                ":one": 1,
            },
        )
        if taken_over is None:
            logger.info(f"Job for order {order_id} was claimed by another worker")
        else:
            logger.warning(
                f"Took over abandoned claim on order {order_id}, attempt {taken_over.attempts} counted"
            )
        return taken_over

    def _claim(
        self, order_id: str, update_expression: str, condition: str, values: dict[str, Any]
    ) -> DeductionJob | None:
        try:
            response = self.table.update_item(
                Key={"order_id": order_id},
                UpdateExpression=update_expression,
                ConditionExpression=condition,
                ExpressionAttributeNames=_STATUS_NAMES,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                return None
            raise StorageUnavailableError(f"Failed to claim job: {e}", order_id=order_id) from e
        except BotoCoreError as e:
            raise StorageUnavailableError(f"Failed to claim job: {e}", order_id=order_id) from e

        return DeductionJob.from_dynamodb_item(response["Attributes"])

    def complete_job(self, order_id: str, now: datetime) -> bool:
        """Mark a claimed job as completed.

        Returns:
            bool: True if updated, False if the job was no longer processing
        """
        return self._finish_claim(
            order_id,
            "SET #status = :status, completed_at = :now, updated_at = :now REMOVE locked_at",
            {":status": DeductionJobStatus.COMPLETED.value, ":now": now.isoformat()},
        )

    def release_for_retry(self, order_id: str, attempts: int, error: str, now: datetime) -> bool:
        """Record a failed attempt and put the job back in the pending queue.

        Returns:
            bool: True if updated, False if the job was no longer processing
        """
        return self._finish_claim(
            order_id,
            "SET #status = :status, attempts = :attempts, last_error = :error, "
            "updated_at = :now REMOVE locked_at",
            {
                ":status": DeductionJobStatus.PENDING.value,
                ":attempts": attempts,
                ":error": error,
                ":now": now.isoformat(),
            },
        )

    def mark_exhausted(self, order_id: str, attempts: int, error: str, now: datetime) -> bool:
        """Record the final failed attempt and park the job for manual review.

        Returns:
            bool: True if updated, False if the job was no longer processing
        """
        return self._finish_claim(
            order_id,
            "SET #status = :status, attempts = :attempts, last_error = :error, "
            "updated_at = :now REMOVE locked_at",
            {
                ":status": DeductionJobStatus.EXHAUSTED.value,
                ":attempts": attempts,
                ":error": error,
                ":now": now.isoformat(),
            },
        )

    def reset_job(self, order_id: str, now: datetime) -> bool:
        """Send an exhausted job back to pending with a fresh retry budget.

        Args:
            order_id: Order identifier
            now: Reset timestamp

        Returns:
            bool: True if reset, False if the job is missing or not exhausted

        Raises:
            StorageUnavailableError: If the write could not be performed
        """
        try:
            self.table.update_item(
                Key={"order_id": order_id},
                UpdateExpression=(
                    "SET #status = :pending, attempts = :zero, updated_at = :now REMOVE last_error"
                ),
                ConditionExpression="#status = :exhausted",
                ExpressionAttributeNames=_STATUS_NAMES,
                ExpressionAttributeValues={
                    ":pending": DeductionJobStatus.PENDING.value,
                    ":exhausted": DeductionJobStatus.EXHAUSTED.value,
                    ":zero": 0,
                    ":now": now.isoformat(),
                },
            )
            return True

        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise StorageUnavailableError(f"Failed to reset job: {e}", order_id=order_id) from e
        except BotoCoreError as e:
            raise StorageUnavailableError(f"Failed to reset job: {e}", order_id=order_id) from e

    def delete_completed_before(self, cutoff: datetime) -> int:
        """Delete completed jobs that finished before the cut-off.

        Args:
            cutoff: Jobs completed before this instant are removed

        Returns:
            int: Number of jobs deleted

        Raises:
            StorageUnavailableError: If the store could not be reached
        """
        deleted = 0
        query_args: dict[str, Any] = {
            "IndexName": STATUS_INDEX,
            "KeyConditionExpression": "#status = :completed",
            "FilterExpression": "completed_at < :cutoff",
            "ExpressionAttributeNames": _STATUS_NAMES,
            "ExpressionAttributeValues": {
                ":completed": DeductionJobStatus.COMPLETED.value,
                ":cutoff": cutoff.isoformat(),
            },
            "ProjectionExpression": "order_id",
        }

        try:
            while True:
                response = self.table.query(**query_args)
                for item in response.get("Items", []):
                    try:
                        self.table.delete_item(
                            Key={"order_id": item["order_id"]},
                            ConditionExpression="#status = :completed",
                            ExpressionAttributeNames=_STATUS_NAMES,
                            ExpressionAttributeValues={
                                ":completed": DeductionJobStatus.COMPLETED.value
                            },
                        )
                        deleted += 1
                    except ClientError as e:
                        if not _is_condition_failure(e):
                            raise

                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                query_args["ExclusiveStartKey"] = last_key

        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(f"Failed to clean up completed jobs: {e}") from e

        return deleted

    def _finish_claim(
        self, order_id: str, update_expression: str, values: dict[str, Any]
    ) -> bool:
        try:
            self.table.update_item(
                Key={"order_id": order_id},
                UpdateExpression=update_expression,
                ConditionExpression="#status = :processing",
                ExpressionAttributeNames=_STATUS_NAMES,
                ExpressionAttributeValues={
                    **values,
                    ":processing": DeductionJobStatus.PROCESSING.value,
                },
            )
            return True

        except ClientError as e:
            if _is_condition_failure(e):
                logger.warning(f"Job for order {order_id} is no longer processing, update skipped")
                return False
            raise StorageUnavailableError(f"Failed to update job: {e}", order_id=order_id) from e
        except BotoCoreError as e:
            raise StorageUnavailableError(f"Failed to update job: {e}", order_id=order_id) from e
