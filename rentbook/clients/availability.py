"""HTTP client for another deployment's availability API."""

import json
import logging
from datetime import date
from typing import List, Optional, Union
from urllib.parse import quote

import httpx

from rentbook.core.config import RemoteAvailabilityConfig
from rentbook.core.errors import (
    InvalidArgument,
    Internal,
    NotFound,
    PermissionDenied,
    TooManyRequests,
    Unauthenticated,
)
from rentbook.schemas.availability import ItemAvailability, ItemOut

logger = logging.getLogger(__name__)

_STATUS_ERRORS = {
    400: InvalidArgument,
    401: Unauthenticated,
    403: PermissionDenied,
    404: NotFound,
    429: TooManyRequests,
}


class AvailabilityClient:
    """Calls ``/api/v1/availability`` with API-key headers, optionally caching answers in redis."""

    def __init__(self, config: RemoteAvailabilityConfig, http: Optional[httpx.Client] = None,
                 redis=None, header_api_key: str = "x-api-key", header_extra: str = "x-api-extra"):
        self.config = config
        self.redis = redis if config.cache_ttl > 0 else None
        headers = {}
        if config.api_key:
            headers[header_api_key] = config.api_key
            headers[header_extra] = config.api_extra
        self._http = http or httpx.Client(base_url=config.base_url.rstrip("/"), timeout=config.timeout)
        self._http.headers.update(headers)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            r = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise Internal(f"availability api: {e}") from e
        if r.is_success:
            return r.json()
        try:
            message = r.json().get("message") or r.json().get("error") or r.text
        except ValueError:
            message = r.text
        error_cls = _STATUS_ERRORS.get(r.status_code, Internal)
        raise error_cls(f"availability api: {message}")

    def _cached(self, key: str):
        if self.redis is None:
            return None
        try:
            raw = self.redis.get(key)
        except Exception as e:
            logger.debug("Availability cache read failed: %s", e)
            return None
        return json.loads(raw) if raw else None

    def _store(self, key: str, value) -> None:
        if self.redis is None:
            return
        try:
            self.redis.set(key, json.dumps(value), ex=self.config.cache_ttl)
        except Exception as e:
            logger.debug("Availability cache write failed: %s", e)

    def get_availability(self, item_name: str, day: Union[date, str]) -> ItemAvailability:
        day = day.isoformat() if isinstance(day, date) else day
        key = f"availability:{item_name.strip().lower()}:{day}"
        data = self._cached(key)
        if data is None:
            data = self._request("GET", f"/api/v1/availability/{quote(item_name.strip(), safe='')}",
                                 params={"date": day})
            self._store(key, data)
        return ItemAvailability(item_name=data.get("item_name", item_name), date=data.get("date", day),
                                available=data["available"], booked_count=data["booked_count"],
                                total=data["total"])

    def get_availability_bulk(self, items: List[str], dates: List[str]) -> List[ItemAvailability]:
        data = self._request("POST", "/api/v1/availability/bulk", json={"items": items, "dates": dates})
        return [ItemAvailability(**row) for row in data.get("results", [])]

    def list_items(self) -> List[ItemOut]:
        data = self._request("GET", "/api/v1/items")
        return [ItemOut(**row) for row in data.get("items", [])]

    def close(self) -> None:
        self._http.close()
