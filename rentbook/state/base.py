from typing import Optional, Protocol

from rentbook.schemas.state import UserFlowState

STATE_KEY = "user_state:{user_id}"
RATE_LIMIT_KEY = "rate_limit:{user_id}"


class StateRepository(Protocol):
    def get(self, user_id: int) -> Optional[UserFlowState]: ...

    def set(self, state: UserFlowState) -> None: ...

    def clear(self, user_id: int) -> None: ...

    def check_rate_limit(self, user_id: int, limit: int, window: int) -> bool: ...
