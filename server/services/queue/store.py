"""Persistence for Job records (``queue_jobs`` table).

Every mutation is a single-row update keyed by job id; the Queue Manager
is the only writer outside of recovery bookkeeping.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlmodel import select

from constants import (
    JOB_STATUS_ACTIVE,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_RECOVERED,
    ROOT_NODE_ID,
)
from core.database import Database
from core.exceptions import NotFoundError
from core.logging import get_logger
from models.database import JobRecord, utc_now
from models.queue import JobLogEntry

logger = get_logger(__name__)


class JobNotFoundError(NotFoundError):
    entity = "Job"


class DlqJobNotFoundError(NotFoundError):
    entity = "Job"

    def __init__(self, job_id: str):
        super().__init__(job_id, f"Job {job_id} not found in DLQ")


class JobStore:
    """Query and targeted-mutation surface over Job records."""

    def __init__(self, database: Database):
        self.database = database

    async def create(self, job_id: str, queue_name: str, execution_id: str,
                     node_id: str, data: Dict[str, Any], recovery_count: int = 0) -> JobRecord:
        record = JobRecord(
            job_id=job_id,
            queue_name=queue_name,
            execution_id=execution_id,
            node_id=node_id,
            status=JOB_STATUS_PENDING,
            data=data,
            recovery_count=recovery_count,
        )
        async with self.database.get_session() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return record

    async def get(self, job_id: str) -> Optional[JobRecord]:
        async with self.database.get_session() as session:
            result = await session.execute(select(JobRecord).where(JobRecord.job_id == job_id))
            return result.scalar_one_or_none()

    async def require(self, job_id: str) -> JobRecord:
        record = await self.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    async def exists(self, job_id: str) -> bool:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(func.count()).select_from(JobRecord).where(JobRecord.job_id == job_id)
            )
            return result.scalar_one() > 0

    async def update(self, job_id: str, **values: Any) -> None:
        """Set columns on one record; raises JobNotFoundError when nothing matched."""
        values.setdefault("updated_at", utc_now())
        async with self.database.get_session() as session:
            result = await session.execute(
                update(JobRecord).where(JobRecord.job_id == job_id).values(**values)
            )
            await session.commit()
        if result.rowcount == 0:
            raise JobNotFoundError(job_id)

    async def append_log(self, job_id: str, entry: JobLogEntry, **values: Any) -> None:
        """Append to the record's log array, optionally setting columns in the same write."""
        async with self.database.get_session() as session:
            result = await session.execute(
                select(JobRecord).where(JobRecord.job_id == job_id).with_for_update()
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise JobNotFoundError(job_id)
            # Reassign so the JSON column is flagged dirty
            record.logs = [*(record.logs or []), entry.to_dict()]
            for key, value in values.items():
                setattr(record, key, value)
            record.updated_at = utc_now()
            session.add(record)
            await session.commit()

    async def list_for_execution(self, execution_id: str) -> List[JobRecord]:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(JobRecord)
                .where(JobRecord.execution_id == execution_id)
                .order_by(JobRecord.created_at, JobRecord.id)
            )
            return list(result.scalars().all())

    async def find_stalled(self, stale_before: datetime) -> List[JobRecord]:
        """Active/pending records with no update or heartbeat since ``stale_before``."""
        stmt = (
            select(JobRecord)
            .where(JobRecord.status.in_([JOB_STATUS_ACTIVE, JOB_STATUS_PENDING]))
            .where(JobRecord.updated_at < stale_before)
            .where(JobRecord.moved_to_dlq == False)  # noqa: E712
            .where(JobRecord.superseded_by.is_(None))
            .where(or_(JobRecord.last_heartbeat.is_(None), JobRecord.last_heartbeat < stale_before))
            .order_by(JobRecord.created_at, JobRecord.id)
        )
        async with self.database.get_session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_incomplete_for_execution(self, execution_id: str) -> List[JobRecord]:
        stmt = (
            select(JobRecord)
            .where(JobRecord.execution_id == execution_id)
            .where(JobRecord.status.not_in([
                JOB_STATUS_COMPLETED, JOB_STATUS_FAILED, JOB_STATUS_RECOVERED,
            ]))
            .where(JobRecord.moved_to_dlq == False)  # noqa: E712
            .where(JobRecord.superseded_by.is_(None))
            .order_by(JobRecord.created_at, JobRecord.id)
        )
        async with self.database.get_session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_skipped_for_execution(self, execution_id: str) -> List[JobRecord]:
        """Node records closed as skipped and not yet replaced by a new job."""
        stmt = (
            select(JobRecord)
            .where(JobRecord.execution_id == execution_id)
            .where(JobRecord.node_id != ROOT_NODE_ID)
            .where(JobRecord.status == JOB_STATUS_COMPLETED)
            .where(JobRecord.superseded_by.is_(None))
            .order_by(JobRecord.created_at, JobRecord.id)
        )
        async with self.database.get_session() as session:
            result = await session.execute(stmt)
            records = result.scalars().all()
        return [record for record in records if (record.result or {}).get("skipped")]

    async def get_dlq(self, job_id: str) -> JobRecord:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(JobRecord)
                .where(JobRecord.job_id == job_id)
                .where(JobRecord.moved_to_dlq == True)  # noqa: E712
            )
            record = result.scalar_one_or_none()
        if record is None:
            raise DlqJobNotFoundError(job_id)
        return record

    async def list_dlq(self, limit: int = 50, offset: int = 0) -> Tuple[List[JobRecord], int]:
        """Newest first."""
        async with self.database.get_session() as session:
            rows = await session.execute(
                select(JobRecord)
                .where(JobRecord.moved_to_dlq == True)  # noqa: E712
                .order_by(JobRecord.created_at.desc(), JobRecord.id.desc())
                .offset(offset)
                .limit(limit)
            )
            total = await session.execute(
                select(func.count()).select_from(JobRecord).where(JobRecord.moved_to_dlq == True)  # noqa: E712
            )
            return list(rows.scalars().all()), total.scalar_one()

    async def count_by_status(self) -> Dict[str, int]:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(JobRecord.status, func.count()).group_by(JobRecord.status)
            )
            return {status: count for status, count in result.all()}

    async def count_dlq(self) -> int:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(func.count()).select_from(JobRecord).where(JobRecord.moved_to_dlq == True)  # noqa: E712
            )
            return result.scalar_one()


def job_record_to_dict(record: JobRecord) -> Dict[str, Any]:
    return {
        "jobId": record.job_id,
        "queueName": record.queue_name,
        "executionId": record.execution_id,
        "nodeId": record.node_id,
        "status": record.status,
        "data": record.data,
        "result": record.result,
        "error": record.error,
        "failedReason": record.failed_reason,
        "attemptsMade": record.attempts_made,
        "logs": record.logs or [],
        "movedToDlq": record.moved_to_dlq,
        "recoveryCount": record.recovery_count,
        "supersededBy": record.superseded_by,
        "lastHeartbeat": record.last_heartbeat,
        "processedAt": record.processed_at,
        "finishedAt": record.finished_at,
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
    }
