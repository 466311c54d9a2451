from datetime import datetime
from typing import Optional

from rentbook.schemas.state import UserFlowState
from rentbook.state.base import RATE_LIMIT_KEY, STATE_KEY


class RedisStateRepository:
    def __init__(self, redis, ttl: int = 24 * 60 * 60):
        self.redis = redis
        self.ttl = ttl

    def get(self, user_id: int) -> Optional[UserFlowState]:
        raw = self.redis.get(STATE_KEY.format(user_id=user_id))
        if raw is None:
            return None
        return UserFlowState.model_validate_json(raw)

    def set(self, state: UserFlowState) -> None:
        state.updated_at = datetime.now()
        self.redis.set(STATE_KEY.format(user_id=state.user_id), state.model_dump_json(), ex=self.ttl)

    def clear(self, user_id: int) -> None:
        self.redis.delete(STATE_KEY.format(user_id=user_id))

    def check_rate_limit(self, user_id: int, limit: int, window: int) -> bool:
        key = RATE_LIMIT_KEY.format(user_id=user_id)
        count = self.redis.incr(key)
        if count == 1:
            self.redis.expire(key, window)
        return count <= limit

    def ping(self) -> None:
        self.redis.ping()
