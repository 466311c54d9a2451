from sqlalchemy import Column, Integer, String, DateTime, Text, Index, func

from rentbook.db.session import Base

TASK_UPSERT = "upsert"
TASK_DELETE = "delete"
TASK_UPDATE_STATUS = "update_status"
TASK_SYNC_SCHEDULE = "sync_schedule"

TASK_TYPES = (TASK_UPSERT, TASK_DELETE, TASK_UPDATE_STATUS, TASK_SYNC_SCHEDULE)

SYNC_PENDING = "pending"
SYNC_RETRY = "retry"
SYNC_COMPLETED = "completed"
SYNC_FAILED = "failed"


class SyncTask(Base):
    __tablename__ = "sync_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_type = Column(String(32), nullable=False)
    booking_id = Column(Integer, nullable=False, default=0)
    payload = Column(Text, nullable=False, default="{}")
    status = Column(String(16), nullable=False, default=SYNC_PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_sync_queue_status", "status"),
        Index("idx_sync_queue_next_retry", "next_retry_at"),
    )
