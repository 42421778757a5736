"""Exception taxonomy for the billing workflow.

Validation and permission failures are raised synchronously by the state
machine and never leave a partial effect behind. Durable-store failures are
raised only by storage adapters and are absorbed by the repository.
"""

from __future__ import annotations

from typing import Optional

from .constants import RequestStatus


class WorkflowError(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(WorkflowError, ValueError):
    """Raised when caller-supplied data violates a precondition."""


class InvalidTransitionError(ValidationError):
    """Raised when an operation is not allowed from the request's current status."""

    def __init__(self, status: RequestStatus, operation: str, detail: Optional[str] = None) -> None:
        message = f"request is {status.value}; cannot {operation}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.status = status
        self.operation = operation


class NotFoundError(WorkflowError):
    """Raised when a referenced order or request is unknown to the store."""


class WorkflowPermissionError(PermissionError):
    """Raised when the acting department may not perform the transition."""


class DurableStoreError(RuntimeError):
    """Raised by durable-store adapters when the backing store is unusable."""


class DurableWriteError(DurableStoreError):
    """Raised by durable-store adapters when a write cannot be completed."""


__all__ = [
    "WorkflowError",
    "ValidationError",
    "InvalidTransitionError",
    "NotFoundError",
    "WorkflowPermissionError",
    "DurableStoreError",
    "DurableWriteError",
]
