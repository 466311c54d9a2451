from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel


# Snapshots carried in sync task payloads and returned to callers
class DayBookingSnapshot(BaseModel):
    id: int
    user_id: int
    user_name: str = ""
    user_nickname: str = ""
    phone: str = ""
    item_id: int
    item_name: str
    date: date
    status: str
    comment: str = ""
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class HourBookingSnapshot(BaseModel):
    id: int
    user_id: int
    cabinet_id: int
    item_name: Optional[str] = None
    client_name: str = ""
    client_phone: str = ""
    start_time: datetime
    end_time: datetime
    status: str
    comment: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BookingUser(BaseModel):
    """Who is booking: chat user id plus the contact details copied onto the row."""

    id: int
    name: str = ""
    nickname: str = ""
    phone: str = ""
