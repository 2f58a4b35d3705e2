"""Railyard exception hierarchy.

All exceptions raised by railyard inherit from RailyardError.

Exception Hierarchy:
    RailyardError (base)
    ├── StoreError                 # Resource store operation failed (transient)
    │   ├── NotFoundError          # Resource does not exist
    │   ├── ConflictError          # Optimistic-concurrency token mismatch
    │   ├── AlreadyExistsError     # Create of an existing name
    │   └── InvalidError           # Store rejected the object
    ├── ReconcileError             # Sub-reconciler failure, wrapped with its phase
    ├── StatusPatchError           # Persisting Stage status failed
    ├── VerificationError          # Verification state machine step failed
    ├── FreightVerificationError   # Some Freight could not be marked verified
    ├── DeletionError              # Finalizer cleanup steps failed
    └── RolloutsDisabledError      # Analysis engine integration is disabled

Exit Codes:
    1 - General error (RailyardError)
    2 - Store error (StoreError and subclasses)
    3 - Reconcile error (ReconcileError, StatusPatchError)
    4 - Deletion error (DeletionError)

Example:
    >>> from railyard_core.errors import NotFoundError
    >>> raise NotFoundError("Freight", "demo", "abc123")
    Traceback (most recent call last):
        ...
    NotFoundError: Freight "abc123" not found in namespace "demo"
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from railyard_core.schemas.verification import VerificationInfo


class RailyardError(Exception):
    """Base exception for all railyard errors.

    Attributes:
        exit_code: Process exit code for this error type (default: 1).
    """

    exit_code: int = 1


class StoreError(RailyardError):
    """Raised when a resource store operation fails.

    Store errors are treated as transient: the reconciler propagates them
    and the work queue retries the Stage with backoff.
    """

    exit_code: int = 2


class NotFoundError(StoreError):
    """Raised when a requested resource does not exist.

    Attributes:
        kind: Resource kind (Stage, Freight, ...).
        namespace: Namespace searched ("" for cluster-scoped kinds).
        name: Name of the missing resource.
    """

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        """Initialize NotFoundError.

        Args:
            kind: Resource kind.
            namespace: Namespace searched.
            name: Name of the missing resource.
        """
        self.kind = kind
        self.namespace = namespace
        self.name = name
        if namespace:
            super().__init__(f'{kind} "{name}" not found in namespace "{namespace}"')
        else:
            super().__init__(f'{kind} "{name}" not found')


class ConflictError(StoreError):
    """Raised when a write carries a stale concurrency token.

    Attributes:
        kind: Resource kind.
        namespace: Resource namespace.
        name: Resource name.
    """

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(
            f'{kind} "{name}" in namespace "{namespace}" was modified concurrently; '
            "retry with the latest version"
        )


class AlreadyExistsError(StoreError):
    """Raised when creating a resource whose name is taken."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f'{kind} "{name}" already exists in namespace "{namespace}"')


class InvalidError(StoreError):
    """Raised when the store rejects an object as invalid.

    Attributes:
        kind: Resource kind.
        name: Resource name.
        reason: Validation failure reason.
    """

    def __init__(self, kind: str, name: str, reason: str) -> None:
        self.kind = kind
        self.name = name
        self.reason = reason
        super().__init__(f'{kind} "{name}" is invalid: {reason}')


class ReconcileError(RailyardError):
    """Raised when one reconciliation phase fails.

    Attributes:
        action: Short description of the failed phase
            (e.g., "sync Promotions").
        cause: The underlying exception.
    """

    exit_code: int = 3

    def __init__(self, action: str, cause: BaseException) -> None:
        """Initialize ReconcileError.

        Args:
            action: Short description of the failed phase.
            cause: The underlying exception.
        """
        self.action = action
        self.cause = cause
        super().__init__(f"failed to {action}: {cause}")


class StatusPatchError(RailyardError):
    """Raised when persisting a Stage's status fails after a reconcile pass.

    Kept distinct from ReconcileError so a persistence failure is never
    mistaken for a reconcile-logic failure.
    """

    exit_code: int = 3

    def __init__(self, namespace: str, name: str, cause: BaseException) -> None:
        self.namespace = namespace
        self.name = name
        self.cause = cause
        super().__init__(f"failed to update Stage status: {cause}")


class VerificationError(RailyardError):
    """Raised when a verification step fails.

    Attributes:
        info: The Error-phase VerificationInfo to record for the attempt,
            or None when there was no attempt to record it against.
    """

    def __init__(self, message: str, info: VerificationInfo | None = None) -> None:
        self.info = info
        super().__init__(message)


class FreightVerificationError(RailyardError):
    """Raised when some Freight in a batch could not be marked verified.

    Freight that was updated successfully stays updated.

    Attributes:
        failures: Number of Freight that could not be marked.
    """

    def __init__(self, failures: int) -> None:
        self.failures = failures
        super().__init__(f"failed to verify {failures} Freight")


class DeletionError(RailyardError):
    """Raised when one or more finalizer cleanup steps fail.

    Nested DeletionErrors are flattened so the message lists every leaf
    failure once.

    Attributes:
        errors: Flattened list of underlying failures.
    """

    exit_code: int = 4

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = _flatten(errors)
        if len(self.errors) == 1:
            detail = str(self.errors[0])
        else:
            detail = "[" + ", ".join(str(e) for e in self.errors) + "]"
        super().__init__(f"error handling deletion of Stage: {detail}")


class RolloutsDisabledError(RailyardError):
    """Raised when an analysis-run operation is attempted while disabled."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(
            f"Rollouts integration is disabled on this controller: cannot {operation}"
        )


def _flatten(errors: Iterable[BaseException]) -> list[BaseException]:
    flat: list[BaseException] = []
    for err in errors:
        if isinstance(err, DeletionError):
            flat.extend(err.errors)
        else:
            flat.append(err)
    return flat


__all__ = [
    "AlreadyExistsError",
    "ConflictError",
    "DeletionError",
    "FreightVerificationError",
    "InvalidError",
    "NotFoundError",
    "RailyardError",
    "ReconcileError",
    "RolloutsDisabledError",
    "StatusPatchError",
    "StoreError",
    "VerificationError",
]
