from __future__ import annotations

from typing import Any


class SalesError(Exception):
    """Base error for the identifier and conversion core.

    ``kind`` is the stable machine-readable category surfaced to callers,
    ``details`` carries structured context such as partially applied writes.
    """

    kind = "internal"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class NotFoundError(SalesError):
    """Unresolvable public identifier, including records owned by another organization."""

    kind = "not_found"
    status_code = 404


class ValidationFailedError(SalesError):
    kind = "validation"
    status_code = 422


class ConflictError(SalesError):
    kind = "conflict"
    status_code = 409


class AllocationFailedError(SalesError):
    """The counter increment did not complete; the owning entity was not persisted."""

    kind = "allocation_failed"
    status_code = 503
    retryable = True


class InternalError(SalesError):
    kind = "internal"
    status_code = 500
