"""Durable outbound task table drained by the spreadsheet worker."""

import json
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from rentbook.core.errors import InvalidArgument, NotFound
from rentbook.db.session import Database
from rentbook.models.sync_task import (
    SyncTask,
    TASK_TYPES,
    SYNC_PENDING,
    SYNC_RETRY,
    SYNC_COMPLETED,
    SYNC_FAILED,
)

logger = logging.getLogger(__name__)


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def encode_payload(payload: Any) -> str:
    return json.dumps(payload, default=_json_default, ensure_ascii=False)


class SyncQueue:
    def __init__(self, database: Database, clock: Callable[[], datetime] = datetime.now):
        self.database = database
        self.clock = clock

    # -----------------------------------------------------------------------
    # Writes inside the caller's transaction
    # -----------------------------------------------------------------------

    def enqueue(self, db: Session, task_type: str, booking_id: int, payload: Any) -> SyncTask:
        if task_type not in TASK_TYPES:
            raise InvalidArgument(f"unknown sync task type {task_type!r}")
        task = SyncTask(
            task_type=task_type,
            booking_id=booking_id,
            payload=encode_payload(payload),
            status=SYNC_PENDING,
            retry_count=0,
            next_retry_at=self.clock(),
        )
        db.add(task)
        db.flush()
        return task

    # -----------------------------------------------------------------------
    # Worker side
    # -----------------------------------------------------------------------

    def fetch_due(self, limit: int = 20) -> List[SyncTask]:
        now = self.clock()
        with self.database.session() as db:
            return (
                db.query(SyncTask)
                .filter(
                    SyncTask.status.in_((SYNC_PENDING, SYNC_RETRY)),
                    or_(SyncTask.next_retry_at.is_(None), SyncTask.next_retry_at <= now),
                )
                .order_by(SyncTask.id)
                .limit(limit)
                .all()
            )

    def get(self, task_id: int) -> Optional[SyncTask]:
        with self.database.session() as db:
            return db.get(SyncTask, task_id)

    def mark_completed(self, task_id: int) -> bool:
        return self._update(task_id, {"status": SYNC_COMPLETED, "processed_at": self.clock(), "last_error": None})

    def mark_retry(self, task_id: int, retry_count: int, error: str, next_retry_at: datetime) -> bool:
        return self._update(
            task_id,
            {
                "status": SYNC_RETRY,
                "retry_count": retry_count,
                "last_error": error,
                "next_retry_at": next_retry_at,
            },
        )

    def mark_failed(self, task_id: int, retry_count: int, error: str) -> bool:
        return self._update(
            task_id,
            {
                "status": SYNC_FAILED,
                "retry_count": retry_count,
                "last_error": error,
                "processed_at": self.clock(),
            },
        )

    def _update(self, task_id: int, values: dict) -> bool:
        def _run(db: Session) -> int:
            # completed rows are final
            return (
                db.query(SyncTask)
                .filter(SyncTask.id == task_id, SyncTask.status != SYNC_COMPLETED)
                .update(values, synchronize_session=False)
            )

        return self.database.transaction(_run) > 0

    # -----------------------------------------------------------------------
    # Operator tools
    # -----------------------------------------------------------------------

    def list_failed(self, limit: int = 100) -> List[SyncTask]:
        with self.database.session() as db:
            return (
                db.query(SyncTask)
                .filter(SyncTask.status == SYNC_FAILED)
                .order_by(SyncTask.id)
                .limit(limit)
                .all()
            )

    def requeue_failed(self, task_id: int) -> SyncTask:
        """Put a dead-lettered task back in line; its retry history is kept."""

        def _run(db: Session) -> SyncTask:
            task = db.get(SyncTask, task_id)
            if task is None:
                raise NotFound(f"sync task {task_id} not found")
            if task.status != SYNC_FAILED:
                raise InvalidArgument(f"sync task {task_id} is {task.status}, not failed")
            task.status = SYNC_PENDING
            task.next_retry_at = self.clock()
            task.processed_at = None
            db.flush()
            return task

        task = self.database.transaction(_run)
        logger.info("Requeued failed sync task %d.", task_id)
        return task

    def pending_count(self) -> int:
        with self.database.session() as db:
            return db.query(SyncTask).filter(SyncTask.status.in_((SYNC_PENDING, SYNC_RETRY))).count()
