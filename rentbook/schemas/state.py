from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel


class UserFlowState(BaseModel):
    """Per-user conversation step plus a bag of JSON values. Never authoritative."""

    user_id: int
    current_step: str = ""
    data: Dict[str, Any] = {}
    updated_at: Optional[datetime] = None

    def set(self, key: str, value: Any) -> None:
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        self.data[key] = value

    def get_str(self, key: str, default: str = "") -> str:
        value = self.data.get(key)
        return value if isinstance(value, str) else default

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.data.get(key)
        # JSON decoding turns every number into float or int
        if isinstance(value, bool):
            return default
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                return default
        return default

    def get_date(self, key: str) -> Optional[date]:
        value = self.data.get(key)
        if not isinstance(value, str):
            return None
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None

    def get_datetime(self, key: str) -> Optional[datetime]:
        value = self.data.get(key)
        if not isinstance(value, str):
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
