"""
Error types raised by the messaging core.

Each error carries the gRPC status code it is reported with and a message
that is safe to show to clients.
"""

import grpc


class ChatError(Exception):
    status_code = grpc.StatusCode.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    status_code = grpc.StatusCode.INVALID_ARGUMENT


class NotFoundError(ChatError):
    status_code = grpc.StatusCode.NOT_FOUND


class ForbiddenError(ChatError):
    status_code = grpc.StatusCode.PERMISSION_DENIED

    def __init__(self, message: str = "Not allowed"):
        super().__init__(message)


class AuthError(ChatError):
    status_code = grpc.StatusCode.UNAUTHENTICATED


class TransientStoreError(ChatError):
    """Persistence I/O failed. Clients only ever see the generic message."""

    def __init__(self, detail: str = ""):
        super().__init__("Server error")
        self.detail = detail


class FanoutDeliveryFailure(Exception):
    """An event could not be queued for a live connection."""

    def __init__(self, connection_id: str, reason: str):
        super().__init__(f"connection {connection_id}: {reason}")
        self.connection_id = connection_id
        self.reason = reason
