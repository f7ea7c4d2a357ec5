from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from state.models import LockInfo


class StateBackendError(RuntimeError):
    """Base error for the remote state backend."""


class ConfigurationError(StateBackendError):
    """Backend or bootstrap configuration is missing or invalid."""


class ConflictError(StateBackendError):
    """Version mismatch, lineage mismatch or a duplicate resource on create."""


class LockBusyError(StateBackendError):
    """The state lock is held by another holder."""

    def __init__(self, message: str, *, holder: Optional["LockInfo"] = None) -> None:
        super().__init__(message)
        self.holder = holder


class StaleLockError(LockBusyError):
    """The state lock is held, and has been for longer than the stale threshold.

    Never cleared automatically; an operator must run a forced unlock.
    """


class BackendNotFoundError(StateBackendError):
    """Bucket or lock table is missing (bootstrap has not run yet)."""


class CorruptStateError(StateBackendError):
    """Fetched state failed decoding, schema validation or digest checks."""


class LockNotHeldError(StateBackendError):
    """A locked operation was attempted without a live lock handle."""


class ConfirmationError(StateBackendError):
    """An irreversible step was attempted without the matching confirmation token."""
