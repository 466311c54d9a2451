"""
Tests for the gRPC availability service over a real in-process channel.
"""

import grpc
import pytest

from conftest import make_user
from rentbook.api.grpc_server import AvailabilityStub, create_grpc_server, from_struct, to_struct
from rentbook.api.limiter import RateLimiter
from rentbook.core.config import AuthConfig
from rentbook.core.security import APIKeyAuthenticator

CRM_METADATA = (("x-api-key", "crm-key"), ("x-api-extra", "crm-extra"))


@pytest.fixture
def stub(services):
    server, port = create_grpc_server(services, host="127.0.0.1", port=0)
    server.start()
    channel = grpc.insecure_channel(f"127.0.0.1:{port}")
    yield AvailabilityStub(channel)
    channel.close()
    server.stop(None)


def _call(stub, method, request, metadata=()):
    return from_struct(getattr(stub, method)(to_struct(request), metadata=metadata, timeout=10))


class TestMethods:

    def test_get_availability(self, engine, stub):
        engine.create_day_booking(make_user(1), "tripod", "2025-12-01")
        result = _call(stub, "GetAvailability", {"item_name": "tripod", "date": "2025-12-01"})
        assert result["available"] is False
        assert result["booked_count"] == 1
        assert result["total"] == 1

    def test_bulk(self, stub):
        result = _call(stub, "GetAvailabilityBulk", {"items": ["lens", "nope"], "dates": ["2025-12-01"]})
        assert [(r["item_name"], r["date"]) for r in result["results"]] == [("lens", "2025-12-01")]

    def test_list_items(self, stub):
        result = _call(stub, "ListItems", {})
        assert [i["name"] for i in result["items"]] == ["camera", "lens", "tripod"]

    def test_request_id_in_trailers(self, stub):
        _, call = stub.ListItems.with_call(to_struct({}), metadata=(("x-request-id", "req-1"),), timeout=10)
        assert ("x-request-id", "req-1") in tuple(call.trailing_metadata())


class TestErrors:

    @pytest.mark.parametrize("request_body, code", [
        ({"item_name": "drone", "date": "2025-12-01"}, grpc.StatusCode.NOT_FOUND),
        ({"item_name": "camera", "date": "12/01/2025"}, grpc.StatusCode.INVALID_ARGUMENT),
    ])
    def test_status_codes(self, stub, request_body, code):
        with pytest.raises(grpc.RpcError) as exc:
            _call(stub, "GetAvailability", request_body)
        assert exc.value.code() == code

    def test_empty_bulk(self, stub):
        with pytest.raises(grpc.RpcError) as exc:
            _call(stub, "GetAvailabilityBulk", {"items": [], "dates": ["2025-12-01"]})
        assert exc.value.code() == grpc.StatusCode.INVALID_ARGUMENT

    @pytest.mark.parametrize("method, request_body", [
        ("GetAvailabilityBulk", {"items": [5], "dates": ["2025-12-01"]}),
        ("GetAvailabilityBulk", {"items": ["lens"], "dates": [20251201]}),
        ("GetAvailabilityBulk", {"items": "lens", "dates": ["2025-12-01"]}),
        ("GetAvailability", {"item_name": "camera", "date": 20251201}),
        ("GetAvailability", {"item_name": 1, "date": "2025-12-01"}),
    ])
    def test_non_string_fields(self, stub, method, request_body):
        with pytest.raises(grpc.RpcError) as exc:
            _call(stub, method, request_body)
        assert exc.value.code() == grpc.StatusCode.INVALID_ARGUMENT


class TestInterceptors:

    @pytest.fixture
    def secured(self, services):
        services.authenticator = APIKeyAuthenticator(AuthConfig(
            enabled=True,
            api_keys=[{"key": "crm-key", "extra": "crm-extra", "permissions": ["read:availability"]}],
        ))
        return services

    def test_unauthenticated(self, secured, stub):
        with pytest.raises(grpc.RpcError) as exc:
            _call(stub, "ListItems", {})
        assert exc.value.code() == grpc.StatusCode.UNAUTHENTICATED

    def test_permission_denied(self, secured, stub):
        with pytest.raises(grpc.RpcError) as exc:
            _call(stub, "ListItems", {}, metadata=CRM_METADATA)
        assert exc.value.code() == grpc.StatusCode.PERMISSION_DENIED

    def test_authorized(self, secured, stub):
        result = _call(stub, "GetAvailability", {"item_name": "lens", "date": "2025-12-01"}, metadata=CRM_METADATA)
        assert result["available"] is True

    def test_rate_limited(self, services, stub):
        services.limiter = RateLimiter(rps=1, burst=1)
        _call(stub, "ListItems", {})
        with pytest.raises(grpc.RpcError) as exc:
            _call(stub, "ListItems", {})
        assert exc.value.code() == grpc.StatusCode.RESOURCE_EXHAUSTED
