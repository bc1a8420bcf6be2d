"""Typed failures raised by the inventory services."""

from __future__ import annotations


class InventoryError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"error": self.message, "type": type(self).__name__}


class ValidationError(InventoryError, ValueError):
    status_code = 400


class NotFound(InventoryError, LookupError):
    status_code = 404


class CapacityExceeded(InventoryError):
    status_code = 409


class InsufficientQuantity(InventoryError):
    status_code = 409

    def __init__(self, available: int, requested: int):
        super().__init__(
            f"Insufficient quantity. Available: {available}, Requested: {requested}"
        )
        self.available = available
        self.requested = requested

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload.update({"available": self.available, "requested": self.requested})
        return payload


class PersistenceError(InventoryError):
    status_code = 500


class SchemaDriftError(PersistenceError):
    """A stored record carries columns the formatter does not know about."""


class AllocationFailed(InventoryError):
    status_code = 500

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause
