"""Google Sheets mirror of bookings: one row per booking, keyed by id in column A."""

import logging
import re
import threading
import time
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from rentbook.core.config import GoogleConfig

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"

# id, user id, item id, date, status, user name, phone, item name, created_at, updated_at
COLUMNS = ("A", "B", "C", "D", "E", "F", "G", "H", "I", "J")
STATUS_COLUMN = "E"
UPDATED_COLUMN = "J"
LAST_COLUMN = COLUMNS[-1]

KIND_DAY = "day"
KIND_HOUR = "hour"

_ROW_IN_RANGE = re.compile(r"![A-Z]+(\d+)")


class SheetsError(Exception):
    pass


def _ts(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    return value.strftime("%Y-%m-%d %H:%M:%S")


def booking_row(kind: str, booking: Dict[str, Any]) -> List[Any]:
    """Render a booking snapshot into the ten mirror columns."""
    if kind == KIND_HOUR:
        start = datetime.fromisoformat(booking["start_time"])
        end = datetime.fromisoformat(booking["end_time"])
        return [
            booking["id"],
            booking.get("user_id", ""),
            booking.get("cabinet_id", ""),
            f"{start:%Y-%m-%d} {start:%H:%M}-{end:%H:%M}",
            booking.get("status", ""),
            booking.get("client_name", ""),
            booking.get("client_phone", ""),
            booking.get("item_name") or "",
            _ts(booking.get("created_at")),
            _ts(booking.get("updated_at")),
        ]
    return [
        booking["id"],
        booking.get("user_id", ""),
        booking.get("item_id", ""),
        booking.get("date", ""),
        booking.get("status", ""),
        booking.get("user_name", ""),
        booking.get("phone", ""),
        booking.get("item_name", ""),
        _ts(booking.get("created_at")),
        _ts(booking.get("updated_at")),
    ]


class _RowCache:
    def __init__(self):
        self.rows: Dict[int, int] = {}
        self.loaded_at: Optional[float] = None


class SheetsClient:
    """
    Thin Sheets v4 REST client.

    Day bookings go to ``bookings_sheet``, hour bookings to ``hourly_sheet``.
    A per-tab cache maps booking id to row number; it is rebuilt by scanning
    column A when older than ``row_cache_ttl`` or when an id is missing.
    """

    def __init__(
        self,
        config: GoogleConfig,
        http: Optional[httpx.Client] = None,
        credentials=None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.spreadsheet_id = config.bookings_spreadsheet_id
        self._http = http or httpx.Client(timeout=config.timeout)
        self._credentials = credentials
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._caches: Dict[str, _RowCache] = {}

    # -----------------------------------------------------------------------
    # Transport
    # -----------------------------------------------------------------------

    def _token(self) -> str:
        if self._credentials is None:
            self._credentials = service_account.Credentials.from_service_account_file(
                self.config.credentials_file, scopes=SCOPES
            )
        if not self._credentials.valid:
            self._credentials.refresh(GoogleAuthRequest())
        return self._credentials.token

    def _request(self, method: str, path: str, params: Optional[dict] = None, json: Any = None) -> dict:
        url = f"{API_BASE}/{self.spreadsheet_id}{path}"
        headers = {"Authorization": f"Bearer {self._token()}"}
        try:
            r = self._http.request(method, url, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise SheetsError(f"{method} {path}: {e}") from e
        if not r.is_success:
            raise SheetsError(f"{method} {path}: HTTP {r.status_code} {r.text[:300]}")
        return r.json() if r.content else {}

    @staticmethod
    def _values_path(a1: str) -> str:
        return "/values/" + quote(a1, safe="!:")

    def get_values(self, a1: str) -> List[List[Any]]:
        return self._request("GET", self._values_path(a1)).get("values", [])

    def update_values(self, a1: str, values: List[List[Any]]) -> dict:
        return self._request(
            "PUT",
            self._values_path(a1),
            params={"valueInputOption": "USER_ENTERED"},
            json={"range": a1, "majorDimension": "ROWS", "values": values},
        )

    def append_values(self, a1: str, values: List[List[Any]]) -> dict:
        return self._request(
            "POST",
            self._values_path(a1) + ":append",
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json={"range": a1, "majorDimension": "ROWS", "values": values},
        )

    def clear_values(self, a1: str) -> dict:
        return self._request("POST", self._values_path(a1) + ":clear", json={})

    def batch_update_values(self, data: List[dict]) -> dict:
        return self._request(
            "POST",
            "/values:batchUpdate",
            json={"valueInputOption": "USER_ENTERED", "data": data},
        )

    # -----------------------------------------------------------------------
    # Row cache
    # -----------------------------------------------------------------------

    def _sheet(self, kind: str) -> str:
        return self.config.hourly_sheet if kind == KIND_HOUR else self.config.bookings_sheet

    def _cache(self, sheet: str) -> _RowCache:
        with self._lock:
            return self._caches.setdefault(sheet, _RowCache())

    def refresh_row_cache(self, sheet: str) -> None:
        values = self.get_values(f"{sheet}!A:A")
        rows = {}
        for index, row in enumerate(values, start=1):
            if not row:
                continue
            try:
                rows[int(str(row[0]).strip())] = index
            except ValueError:
                # header or free text
                continue
        cache = self._cache(sheet)
        with self._lock:
            cache.rows = rows
            cache.loaded_at = self._monotonic()
        logger.debug("Row cache for %s: %d row(s).", sheet, len(rows))

    def find_row(self, sheet: str, booking_id: int) -> Optional[int]:
        cache = self._cache(sheet)
        with self._lock:
            fresh = cache.loaded_at is not None and self._monotonic() - cache.loaded_at < self.config.row_cache_ttl
            row = cache.rows.get(booking_id)
        if fresh and row is not None:
            return row
        self.refresh_row_cache(sheet)
        with self._lock:
            return cache.rows.get(booking_id)

    def _remember(self, sheet: str, booking_id: int, row: Optional[int]) -> None:
        cache = self._cache(sheet)
        with self._lock:
            if row is None:
                cache.rows.pop(booking_id, None)
            else:
                cache.rows[booking_id] = row

    def warm_up(self) -> None:
        for sheet in (self.config.bookings_sheet, self.config.hourly_sheet):
            try:
                self.refresh_row_cache(sheet)
            except SheetsError as e:
                logger.warning("Could not warm row cache for %s: %s", sheet, e)

    # -----------------------------------------------------------------------
    # Mirror operations
    # -----------------------------------------------------------------------

    def upsert_booking(self, kind: str, booking: Dict[str, Any]) -> None:
        sheet = self._sheet(kind)
        booking_id = int(booking["id"])
        values = [booking_row(kind, booking)]
        row = self.find_row(sheet, booking_id)
        if row is not None:
            self.update_values(f"{sheet}!A{row}:{LAST_COLUMN}{row}", values)
            return
        resp = self.append_values(f"{sheet}!A:{LAST_COLUMN}", values)
        updated_range = resp.get("updates", {}).get("updatedRange", "")
        match = _ROW_IN_RANGE.search(updated_range)
        self._remember(sheet, booking_id, int(match.group(1)) if match else None)

    def delete_booking(self, kind: str, booking_id: int) -> None:
        sheet = self._sheet(kind)
        row = self.find_row(sheet, booking_id)
        if row is None:
            return
        self.clear_values(f"{sheet}!A{row}:{LAST_COLUMN}{row}")
        self._remember(sheet, booking_id, None)

    def update_status(self, kind: str, booking_id: int, status: str, updated_at: Any = None) -> bool:
        """Patch status and updated_at; False when the row does not exist yet."""
        sheet = self._sheet(kind)
        row = self.find_row(sheet, booking_id)
        if row is None:
            return False
        self.batch_update_values(
            [
                {"range": f"{sheet}!{STATUS_COLUMN}{row}", "values": [[status]]},
                {"range": f"{sheet}!{UPDATED_COLUMN}{row}", "values": [[_ts(updated_at or datetime.now())]]},
            ]
        )
        return True

    def render_schedule(self, start: date, end: date, items: Iterable[Any], bookings: Iterable[Any]) -> None:
        """Rewrite the schedule tab as an items x dates grid of ``booked/total`` cells."""
        days = []
        cursor = start
        while cursor <= end:
            days.append(cursor)
            cursor = date.fromordinal(cursor.toordinal() + 1)

        booked: Dict[tuple, List[str]] = {}
        for b in bookings:
            if b.status not in ("pending", "confirmed", "approved"):
                continue
            booked.setdefault((b.item_id, b.date), []).append(b.user_name or str(b.user_id))

        grid = [["Item"] + [d.isoformat() for d in days]]
        for item in items:
            row = [item.name]
            for d in days:
                names = booked.get((item.id, d), [])
                cell = f"{len(names)}/{item.total_quantity}"
                if names:
                    cell += " " + ", ".join(names)
                row.append(cell)
            grid.append(row)

        sheet = self.config.schedule_sheet
        self.clear_values(f"{sheet}!A:ZZZ")
        self.update_values(f"{sheet}!A1", grid)
        logger.info("Rendered schedule %s..%s: %d item(s) x %d day(s).", start, end, len(grid) - 1, len(days))

    def close(self) -> None:
        self._http.close()
