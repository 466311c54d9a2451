from rentbook.state.base import StateRepository
from rentbook.state.memory import MemoryStateRepository
from rentbook.state.redis_store import RedisStateRepository
from rentbook.state.failover import FailoverStateRepository
