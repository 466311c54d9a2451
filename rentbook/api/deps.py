from typing import Optional

from fastapi import Request

from rentbook.core.errors import TooManyRequests
from rentbook.core.security import APIClient
from rentbook.services.availability import AvailabilityReader
from rentbook.services.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_reader(request: Request) -> AvailabilityReader:
    return get_services(request).reader


def rate_limit_key(api_key: Optional[str], peer: Optional[str]) -> str:
    return api_key or peer or "unknown"


def require(method: str):
    """Dependency that authenticates, authorizes ``method`` and spends one rate-limit token."""

    def _guard(request: Request) -> Optional[APIClient]:
        services = get_services(request)
        auth = services.authenticator
        api_key = request.headers.get(auth.header_api_key)
        client = auth.authenticate(api_key, request.headers.get(auth.header_extra))
        auth.authorize(client, method)
        peer = request.client.host if request.client else None
        if not services.limiter.allow(rate_limit_key(api_key, peer)):
            raise TooManyRequests("rate limit exceeded")
        return client

    return _guard
