from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query

from rentbook.api.deps import get_reader, require
from rentbook.core.errors import InvalidArgument
from rentbook.schemas.availability import (
    BulkAvailabilityRequest,
    BulkAvailabilityResponse,
    ItemAvailability,
    ItemsResponse,
)
from rentbook.services.availability import AvailabilityReader

router = APIRouter(tags=["Availability"])


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


# ---------------------------------------------------------------------------
# Bulk (declared before the item route so "bulk" is not taken as a name)
# ---------------------------------------------------------------------------


@router.get("/availability/bulk", response_model=BulkAvailabilityResponse)
def get_availability_bulk(
    items: Optional[str] = Query(None),
    dates: Optional[str] = Query(None),
    reader: AvailabilityReader = Depends(get_reader),
    _client=Depends(require("GetAvailabilityBulk")),
):
    results = reader.get_availability_bulk(_split_csv(items), _split_csv(dates))
    return BulkAvailabilityResponse(results=results)


@router.post("/availability/bulk", response_model=BulkAvailabilityResponse)
def post_availability_bulk(
    data: BulkAvailabilityRequest = Body(...),
    reader: AvailabilityReader = Depends(get_reader),
    _client=Depends(require("GetAvailabilityBulk")),
):
    results = reader.get_availability_bulk(data.items, data.dates)
    return BulkAvailabilityResponse(results=results)


# ---------------------------------------------------------------------------
# Single item
# ---------------------------------------------------------------------------


@router.get("/availability/{item_name}", response_model=ItemAvailability)
def get_availability(
    item_name: str,
    date: Optional[str] = Query(None),
    reader: AvailabilityReader = Depends(get_reader),
    _client=Depends(require("GetAvailability")),
):
    if not date:
        raise InvalidArgument("date query parameter is required")
    return reader.get_availability(item_name, date)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@router.get("/items", response_model=ItemsResponse)
def list_items(
    reader: AvailabilityReader = Depends(get_reader),
    _client=Depends(require("ListItems")),
):
    return ItemsResponse(items=reader.list_items())
