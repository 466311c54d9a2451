"""
gRPC availability service.

Messages are ``google.protobuf.Struct`` values carrying the same fields as
the HTTP JSON bodies, so no generated stubs are needed on either side.
"""

import logging
import time
import uuid
from concurrent import futures
from typing import Callable, Dict, List, Optional, Sequence

import grpc
from google.protobuf import json_format
from google.protobuf.struct_pb2 import Struct

from rentbook.api.deps import rate_limit_key
from rentbook.core.errors import Internal, InvalidArgument, ServiceError, TooManyRequests
from rentbook.services.container import Services

logger = logging.getLogger(__name__)

SERVICE_NAME = "rentbook.availability.v1.AvailabilityService"
METHODS = ("GetAvailability", "GetAvailabilityBulk", "ListItems")

REQUEST_ID_KEY = "x-request-id"


class CallInfo:
    """Per-call state shared by the interceptor chain."""

    def __init__(self, method: str, context: grpc.ServicerContext):
        self.method = method
        self.context = context
        self.metadata: Dict[str, str] = {m.key.lower(): m.value for m in (context.invocation_metadata() or ())}
        self.request_id = ""

    @property
    def peer(self) -> str:
        # "ipv4:127.0.0.1:50512" -> "127.0.0.1"
        peer = self.context.peer() or ""
        kind, _, rest = peer.partition(":")
        if kind == "ipv6":
            return rest.rsplit(":", 1)[0].strip("[]") or peer
        return rest.rsplit(":", 1)[0] if rest else peer


Handler = Callable[[dict, CallInfo], dict]
Interceptor = Callable[[dict, CallInfo, Handler], dict]


def chain(handler: Handler, interceptors: Sequence[Interceptor]) -> Handler:
    """Wrap ``handler`` so ``interceptors[0]`` runs first."""
    for interceptor in reversed(interceptors):
        handler = (lambda ic, nxt: lambda req, call: ic(req, call, nxt))(interceptor, handler)
    return handler


# ---------------------------------------------------------------------------
# Interceptors
# ---------------------------------------------------------------------------


def request_id_interceptor(request: dict, call: CallInfo, call_next: Handler) -> dict:
    call.request_id = call.metadata.get(REQUEST_ID_KEY) or uuid.uuid4().hex
    call.context.set_trailing_metadata(((REQUEST_ID_KEY, call.request_id),))
    return call_next(request, call)


def logging_interceptor(request: dict, call: CallInfo, call_next: Handler) -> dict:
    started = time.perf_counter()
    code = grpc.StatusCode.OK
    try:
        return call_next(request, call)
    except ServiceError as e:
        code = e.grpc_code
        raise
    except Exception:
        code = grpc.StatusCode.INTERNAL
        raise
    finally:
        logger.info(
            "grpc %s remote=%s code=%s duration=%.1fms request_id=%s",
            call.method, call.peer, code.name, (time.perf_counter() - started) * 1000, call.request_id,
        )


def auth_interceptor(services: Services) -> Interceptor:
    auth = services.authenticator

    def _intercept(request: dict, call: CallInfo, call_next: Handler) -> dict:
        client = auth.authenticate(call.metadata.get(auth.header_api_key), call.metadata.get(auth.header_extra))
        auth.authorize(client, call.method)
        return call_next(request, call)

    return _intercept


def rate_limit_interceptor(services: Services) -> Interceptor:
    auth = services.authenticator

    def _intercept(request: dict, call: CallInfo, call_next: Handler) -> dict:
        key = rate_limit_key(call.metadata.get(auth.header_api_key), call.peer)
        if not services.limiter.allow(key):
            raise TooManyRequests("rate limit exceeded")
        return call_next(request, call)

    return _intercept


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


def _string_field(request: dict, field: str) -> str:
    value = request.get(field, "")
    if not isinstance(value, str):
        raise InvalidArgument(f"{field} must be a string")
    return value


def _string_list(request: dict, field: str) -> List[str]:
    value = request.get(field) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidArgument(f"{field} must be a list of strings")
    return value


class AvailabilityServicer:
    def __init__(self, services: Services):
        self.reader = services.reader

    def GetAvailability(self, request: dict, call: CallInfo) -> dict:
        result = self.reader.get_availability(_string_field(request, "item_name"), _string_field(request, "date"))
        return result.model_dump()

    def GetAvailabilityBulk(self, request: dict, call: CallInfo) -> dict:
        items = _string_list(request, "items")
        dates = _string_list(request, "dates")
        results = self.reader.get_availability_bulk(items, dates)
        return {"results": [r.model_dump() for r in results]}

    def ListItems(self, request: dict, call: CallInfo) -> dict:
        return {"items": [i.model_dump() for i in self.reader.list_items()]}


def _unary(method: str, handler: Handler):
    def behavior(request: Struct, context: grpc.ServicerContext) -> Struct:
        call = CallInfo(method, context)
        try:
            payload = json_format.MessageToDict(request)
            result = handler(payload, call)
        except ServiceError as e:
            context.abort(e.grpc_code, e.message)
        except Exception:
            logger.exception("grpc %s failed (request_id=%s)", method, call.request_id)
            err = Internal("internal error")
            context.abort(err.grpc_code, err.message)
        response = Struct()
        json_format.ParseDict(result, response)
        return response

    return grpc.unary_unary_rpc_method_handler(
        behavior,
        request_deserializer=Struct.FromString,
        response_serializer=Struct.SerializeToString,
    )


def build_handler(services: Services, extra: Optional[List[Interceptor]] = None) -> grpc.GenericRpcHandler:
    servicer = AvailabilityServicer(services)
    interceptors: List[Interceptor] = [
        request_id_interceptor,
        logging_interceptor,
        auth_interceptor(services),
        rate_limit_interceptor(services),
    ] + list(extra or [])
    handlers = {name: _unary(name, chain(getattr(servicer, name), interceptors)) for name in METHODS}
    return grpc.method_handlers_generic_handler(SERVICE_NAME, handlers)


def create_grpc_server(services: Services, host: Optional[str] = None, port: Optional[int] = None):
    """Returns ``(server, bound_port)``; the server is not started."""
    config = services.settings.api.grpc
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=config.max_workers))
    server.add_generic_rpc_handlers((build_handler(services),))
    bound = server.add_insecure_port(f"{host or config.host}:{config.port if port is None else port}")
    return server, bound


class AvailabilityStub:
    """Client side of the Struct-based service."""

    def __init__(self, channel: grpc.Channel):
        for name in METHODS:
            setattr(
                self,
                name,
                channel.unary_unary(
                    f"/{SERVICE_NAME}/{name}",
                    request_serializer=Struct.SerializeToString,
                    response_deserializer=Struct.FromString,
                ),
            )


def to_struct(data: dict) -> Struct:
    message = Struct()
    json_format.ParseDict(data, message)
    return message


def from_struct(message: Struct) -> dict:
    return json_format.MessageToDict(message)
