from typing import List, Optional

from pydantic import BaseModel, field_validator


class Availability(BaseModel):
    available: bool
    booked_count: int
    total: int


class ItemAvailability(Availability):
    item_name: str
    date: str


class BulkAvailabilityRequest(BaseModel):
    items: List[str] = []
    dates: List[str] = []

    @field_validator("items", "dates", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return v or []


class BulkAvailabilityResponse(BaseModel):
    results: List[ItemAvailability]


class ItemOut(BaseModel):
    id: int
    name: str
    description: str = ""
    total_quantity: int
    sort_order: int = 0

    class Config:
        from_attributes = True


class ItemsResponse(BaseModel):
    items: List[ItemOut]


class DayCount(BaseModel):
    date: str
    booked_count: int
    available_count: int
    total: int


class PeriodAvailability(BaseModel):
    item_id: int
    item_name: Optional[str] = None
    days: List[DayCount]
