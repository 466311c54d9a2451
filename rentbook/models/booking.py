from sqlalchemy import Column, Integer, BigInteger, String, Date, DateTime, Text, ForeignKey, Index, func
from sqlalchemy.orm import relationship

from rentbook.db.session import Base

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_CANCELED = "canceled"
STATUS_COMPLETED = "completed"

ALL_STATUSES = (
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_CANCELED,
    STATUS_COMPLETED,
)

# Rows written before the spelling was fixed may carry "cancelled".
LEGACY_CANCELED = "cancelled"

ACTIVE_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_APPROVED)
TERMINAL_STATUSES = (STATUS_CANCELED, LEGACY_CANCELED, STATUS_REJECTED)


def normalize_status(value: str) -> str:
    value = (value or "").strip().lower()
    if value == LEGACY_CANCELED:
        return STATUS_CANCELED
    return value


def is_terminal(value: str) -> bool:
    return normalize_status(value) in (STATUS_CANCELED, STATUS_REJECTED)


class DayBooking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    user_name = Column(String(255), nullable=False, default="")
    user_nickname = Column(String(255), nullable=False, default="")
    phone = Column(String(32), nullable=False, default="")
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    item_name = Column(String(255), nullable=False)
    date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=STATUS_PENDING)
    comment = Column(Text, nullable=False, default="")
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    item = relationship("Item")

    __table_args__ = (
        Index("idx_bookings_item_date_status", "item_id", "date", "status"),
        Index("idx_bookings_user", "user_id"),
        Index("idx_bookings_date", "date"),
    )


class HourBooking(Base):
    __tablename__ = "hourly_bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    cabinet_id = Column(Integer, ForeignKey("cabinets.id"), nullable=False)
    item_name = Column(String(255), nullable=True)
    client_name = Column(String(255), nullable=False, default="")
    client_phone = Column(String(32), nullable=False, default="")
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=STATUS_PENDING)
    comment = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    cabinet = relationship("Cabinet")

    __table_args__ = (
        Index("idx_hourly_bookings_cabinet_time", "cabinet_id", "start_time", "end_time"),
        Index("idx_hourly_bookings_status", "status"),
    )
