import hmac
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from rentbook.core.config import AuthConfig
from rentbook.core.errors import PermissionDenied, Unauthenticated

PERM_READ_AVAILABILITY = "read:availability"
PERM_READ_ITEMS = "read:items"

METHOD_PERMISSIONS = {
    "GetAvailability": PERM_READ_AVAILABILITY,
    "GetAvailabilityBulk": PERM_READ_AVAILABILITY,
    "ListItems": PERM_READ_ITEMS,
}


@dataclass
class APIClient:
    key: str
    extra: str
    name: str = ""
    permissions: List[str] = field(default_factory=list)

    def allows(self, permission: str) -> bool:
        if not self.permissions:
            return True
        return permission in self.permissions


class APIKeyAuthenticator:
    """Checks the primary key and secondary token pair against configured clients."""

    def __init__(self, config: AuthConfig):
        self.enabled = config.enabled
        self.header_api_key = config.header_api_key.lower()
        self.header_extra = config.header_extra.lower()
        self._clients: Dict[str, APIClient] = {
            c.key: APIClient(key=c.key, extra=c.extra, name=c.name, permissions=list(c.permissions))
            for c in config.api_keys
            if c.key
        }

    def authenticate(self, api_key: Optional[str], extra: Optional[str]) -> Optional[APIClient]:
        """Returns the matching client, ``None`` when auth is disabled."""
        if not self.enabled:
            return None
        if not api_key or not extra:
            raise Unauthenticated("missing api credentials")
        client = self._clients.get(api_key)
        if client is None:
            raise Unauthenticated("invalid api key")
        if not hmac.compare_digest(client.extra.encode("utf-8"), extra.encode("utf-8")):
            raise Unauthenticated("invalid api credentials")
        return client

    def authorize(self, client: Optional[APIClient], method: str) -> None:
        if not self.enabled or client is None:
            return
        permission = METHOD_PERMISSIONS.get(method)
        if permission and not client.allows(permission):
            raise PermissionDenied(f"permission {permission} required")
