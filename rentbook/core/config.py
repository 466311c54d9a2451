import os
import re
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = "configs/config.yaml"

_ENV_PATTERN = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


class ConfigError(Exception):
    """Raised when the configuration file is missing, malformed or invalid."""


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class AppConfig(BaseModel):
    name: str = "rentbook"
    environment: str = "development"
    version: str = "0.1.0"


class DatabaseConfig(BaseModel):
    url: str = "sqlite:///data/rentbook.db"
    pool_size: int = 5
    max_overflow: int = 5
    pool_recycle: int = 3600
    serializable_retries: int = 5
    echo: bool = False

    @field_validator("url", mode="before")
    @classmethod
    def default_when_empty(cls, v):
        # an unset ${DATABASE_URL} expands to ""
        return v or "sqlite:///data/rentbook.db"


class RedisConfig(BaseModel):
    address: str = ""
    password: str = ""
    db: int = 0
    pool_size: int = 10
    socket_timeout: float = 5.0

    @property
    def enabled(self) -> bool:
        return bool(self.address)


class HTTPConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    read_header_timeout: int = 5
    write_timeout: int = 15


class GRPCConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8081
    max_workers: int = 10


class APIKeyConfig(BaseModel):
    key: str = ""
    extra: str = ""
    name: str = ""
    permissions: List[str] = []


class AuthConfig(BaseModel):
    enabled: bool = False
    header_api_key: str = "x-api-key"
    header_extra: str = "x-api-extra"
    api_keys: List[APIKeyConfig] = []

    @field_validator("api_keys")
    @classmethod
    def drop_blank_keys(cls, v):
        # an unset ${CRM_API_KEY} leaves an entry without a key
        return [k for k in v if k.key]


class RateLimitConfig(BaseModel):
    rps: float = 0
    burst: int = 5
    max_keys: int = 10000


class APIConfig(BaseModel):
    enabled: bool = True
    http: HTTPConfig = HTTPConfig()
    grpc: GRPCConfig = GRPCConfig()
    auth: AuthConfig = AuthConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()


class BookingConfig(BaseModel):
    max_booking_days: int = 365
    day_min_advance_minutes: int = 0
    min_advance_minutes: int = 60
    hour_max_advance_days: int = 30
    max_active_per_user: int = 0
    items_cache_ttl: int = 30 * 60


class WorkerConfig(BaseModel):
    enabled: bool = True
    max_retries: int = 5
    initial_delay: float = 2.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    batch_size: int = 20
    poll_interval: float = 2.0
    queue_size: int = 1000
    redis_queue_key: str = "sheets:queue"
    dead_letter_key: str = "sheets:deadletter"


class GoogleConfig(BaseModel):
    credentials_file: str = ""
    bookings_spreadsheet_id: str = ""
    bookings_sheet: str = "Bookings"
    hourly_sheet: str = "HourlyBookings"
    schedule_sheet: str = "Schedule"
    row_cache_ttl: int = 60 * 60
    timeout: float = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.credentials_file and self.bookings_spreadsheet_id)


class StateConfig(BaseModel):
    ttl_hours: int = 24
    retry_primary_after: int = 60


class RemoteAvailabilityConfig(BaseModel):
    """Where hour bookings check external item capacity when the catalog lives elsewhere."""

    base_url: str = ""
    api_key: str = ""
    api_extra: str = ""
    timeout: float = 5.0
    cache_ttl: int = 0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    file_path: str = ""


class ItemConfig(BaseModel):
    id: int
    name: str
    description: str = ""
    total_quantity: int = Field(1, ge=1)
    sort_order: int = 0

    @field_validator("id")
    @classmethod
    def id_not_zero(cls, v):
        if v == 0:
            raise ValueError("item id must be non-zero")
        return v

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("item name must not be empty")
        return v


def _check_unique_items(items: List[ItemConfig]) -> List[ItemConfig]:
    seen_ids = set()
    seen_names = set()
    for item in items:
        if item.id in seen_ids:
            raise ValueError(f"duplicate item id {item.id}")
        key = item.name.lower()
        if key in seen_names:
            raise ValueError(f"duplicate item name {item.name!r}")
        seen_ids.add(item.id)
        seen_names.add(key)
    return items


class ItemsCatalog(BaseModel):
    items: List[ItemConfig] = []

    @model_validator(mode="after")
    def unique(self):
        _check_unique_items(self.items)
        return self


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    PROJECT_NAME: str = "Rentbook API"
    API_V1_STR: str = "/api/v1"

    app: AppConfig = AppConfig()
    database: DatabaseConfig = DatabaseConfig()
    redis: RedisConfig = RedisConfig()
    api: APIConfig = APIConfig()
    booking: BookingConfig = BookingConfig()
    worker: WorkerConfig = WorkerConfig()
    google: GoogleConfig = GoogleConfig()
    state: StateConfig = StateConfig()
    availability_client: RemoteAvailabilityConfig = RemoteAvailabilityConfig()
    logging: LoggingConfig = LoggingConfig()

    managers: List[int] = []
    blacklist: List[int] = []
    items: List[ItemConfig] = []

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RENTBOOK_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def unique_items(self):
        _check_unique_items(self.items)
        return self

    def is_manager(self, user_id: int) -> bool:
        return user_id in self.managers

    def is_blacklisted(self, user_id: int) -> bool:
        return user_id in self.blacklist


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def expand_env(text: str) -> str:
    """Replace ``${VAR}`` and ``$VAR`` with environment values; unknown names become empty."""
    return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1) or m.group(2), ""), text)


def _drop_nulls(value):
    """Remove null mapping values so an unset ${VAR} falls back to the field default."""
    if isinstance(value, dict):
        return {k: _drop_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_nulls(v) for v in value if v is not None]
    return value


def _read_yaml(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = fh.read()
    except OSError as e:
        raise ConfigError(f"read config {path}: {e}") from e
    try:
        data = yaml.safe_load(expand_env(raw))
    except yaml.YAMLError as e:
        raise ConfigError(f"parse config {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config {path}: top level must be a mapping")
    return _drop_nulls(data)


def load_items_catalog(path: str) -> List[ItemConfig]:
    data = _read_yaml(path)
    try:
        return ItemsCatalog(**data).items
    except ValidationError as e:
        raise ConfigError(f"invalid items catalog {path}: {e}") from e


def load_settings(path: Optional[str] = None, items_path: Optional[str] = None) -> Settings:
    """Build settings from a YAML file, an optional items catalog and the environment."""
    data = _read_yaml(path) if path else {}
    if items_path:
        data["items"] = [item.model_dump() for item in load_items_catalog(items_path)]
    try:
        return Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid config: {e}") from e


def config_path_from_env() -> str:
    return os.environ.get("CRM_CONFIG_PATH") or os.environ.get("CONFIG_PATH") or DEFAULT_CONFIG_PATH
