import grpc
from fastapi import status


class ServiceError(Exception):
    """Base of every business error; ``kind`` is the stable name shown to callers."""

    kind = "Internal"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    grpc_code = grpc.StatusCode.INTERNAL

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InvalidArgument(ServiceError):
    kind = "InvalidArgument"
    http_status = status.HTTP_400_BAD_REQUEST
    grpc_code = grpc.StatusCode.INVALID_ARGUMENT


class OutsideBookingWindow(InvalidArgument):
    kind = "OutsideBookingWindow"


class NotFound(ServiceError):
    kind = "NotFound"
    http_status = status.HTTP_404_NOT_FOUND
    grpc_code = grpc.StatusCode.NOT_FOUND


class Unauthenticated(ServiceError):
    kind = "Unauthenticated"
    http_status = status.HTTP_401_UNAUTHORIZED
    grpc_code = grpc.StatusCode.UNAUTHENTICATED


class PermissionDenied(ServiceError):
    kind = "PermissionDenied"
    http_status = status.HTTP_403_FORBIDDEN
    grpc_code = grpc.StatusCode.PERMISSION_DENIED


class Forbidden(PermissionDenied):
    kind = "Forbidden"


class UserBlacklisted(PermissionDenied):
    kind = "UserBlacklisted"


class FailedPrecondition(ServiceError):
    kind = "FailedPrecondition"
    http_status = status.HTTP_409_CONFLICT
    grpc_code = grpc.StatusCode.FAILED_PRECONDITION


class SlotNotAvailable(FailedPrecondition):
    kind = "SlotNotAvailable"


class ItemNotAvailable(FailedPrecondition):
    kind = "ItemNotAvailable"


# Day-capacity exhaustion has historically been reported under this name.
NotAvailable = ItemNotAvailable


class SlotMisaligned(FailedPrecondition):
    kind = "SlotMisaligned"


class TooLate(FailedPrecondition):
    kind = "TooLate"


class AlreadyFinalized(FailedPrecondition):
    kind = "AlreadyFinalized"


class BookingLimitExceeded(FailedPrecondition):
    kind = "BookingLimitExceeded"


class ConcurrentModification(ServiceError):
    kind = "ConcurrentModification"
    http_status = status.HTTP_409_CONFLICT
    grpc_code = grpc.StatusCode.ABORTED


class TooManyRequests(ServiceError):
    kind = "TooManyRequests"
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    grpc_code = grpc.StatusCode.RESOURCE_EXHAUSTED


class Internal(ServiceError):
    pass
