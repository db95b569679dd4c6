from __future__ import annotations

from typing import Any, Optional


class AppError(Exception):
    """
    Base class for errors the engine raises on purpose.

    `status_code` is what the HTTP layer returns for the error; `is_operational`
    separates expected failures (bad input, storage outage) from programming errors.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        is_operational: bool = True,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = str(message)
        self.status_code = int(status_code)
        self.is_operational = bool(is_operational)
        self.context = dict(context) if context else None


class ValidationError(AppError):
    def __init__(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, 400, True, context)


class NotFoundError(AppError):
    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} with ID {identifier} not found", 404, True, {"resource": resource, "id": identifier})


class OrderStateError(AppError):
    """Raised when a write would move an order out of a terminal state."""

    def __init__(self, order_id: str, message: str) -> None:
        super().__init__(f"Order {order_id}: {message}", 409, True, {"orderId": order_id})


class DatabaseError(AppError):
    def __init__(self, message: str, original_error: Optional[BaseException] = None) -> None:
        super().__init__(
            message,
            500,
            True,
            {"originalError": str(original_error)} if original_error is not None else None,
        )
        self.original_error = original_error


class ExternalServiceError(AppError):
    def __init__(self, service: str, message: str, status_code: int = 503) -> None:
        super().__init__(f"{service} error: {message}", status_code, True, {"service": service})
        self.service = service


class OrderExecutionError(AppError):
    def __init__(self, order_id: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(
            f"Order {order_id} execution failed: {message}",
            500,
            True,
            {"orderId": order_id, **dict(context or {})},
        )
        self.order_id = order_id


def is_operational_error(error: Any) -> bool:
    if isinstance(error, AppError):
        return error.is_operational
    return False


def get_error_message(error: Any) -> str:
    if isinstance(error, AppError):
        return error.message
    if isinstance(error, BaseException):
        msg = str(error)
        return msg if msg else type(error).__name__
    return str(error)
