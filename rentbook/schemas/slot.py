from datetime import datetime

from pydantic import BaseModel


class TimeSlot(BaseModel):
    start_time: datetime
    end_time: datetime
    available: bool = True

    @property
    def label(self) -> str:
        return f"{self.start_time:%H:%M}-{self.end_time:%H:%M}"


class ScheduleWindow(BaseModel):
    start: datetime
    end: datetime
    slot_duration: int
