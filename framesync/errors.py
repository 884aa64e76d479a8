"""Exception taxonomy shared by the vault and the automation pipeline."""

from __future__ import annotations


class FrameSyncError(Exception):
    """Base class for all FrameSync failures."""


class VaultLockedError(FrameSyncError):
    """Raised when a vault operation requires an unlocked vault."""

    def __init__(self, message: str = "Vault is locked") -> None:
        super().__init__(message)


class VaultKeyNotFoundError(FrameSyncError, LookupError):
    """Raised when the requested entry does not exist in the vault."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Key not found in vault: {key}")


class VaultUnlockError(FrameSyncError):
    """Raised when the vault cannot be unlocked.

    Wrong passwords and corrupted blobs intentionally share this error and its
    message so callers cannot build a password-guessing oracle.
    """

    def __init__(self, message: str = "Failed to unlock vault: invalid password or corrupted vault") -> None:
        super().__init__(message)


class DecryptionError(FrameSyncError):
    """Raised for every decryption failure, whatever the underlying cause."""

    def __init__(self, message: str = "Decryption failed") -> None:
        super().__init__(message)


class PermissionDeniedError(FrameSyncError):
    """Raised when the permission gate refuses an action."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class UnsupportedSimulationError(FrameSyncError):
    """Raised when no simulator exists for an action type."""

    def __init__(self, action_type: str) -> None:
        self.action_type = action_type
        super().__init__(f"Unsupported action type for simulation: {action_type}")


class StaleSnapshotError(FrameSyncError):
    """Raised when the financial state keeps moving between simulation and commit."""

    def __init__(self, simulated_revision: object, current_revision: object) -> None:
        self.simulated_revision = simulated_revision
        self.current_revision = current_revision
        super().__init__(
            f"Financial snapshot moved from revision {simulated_revision} to {current_revision} "
            "after re-simulation"
        )


class ExternalCommitError(FrameSyncError):
    """Raised when the external collaborator fails to apply an action."""


class RuleDefinitionError(FrameSyncError, ValueError):
    """Raised when a rule, condition or action template is malformed."""


__all__ = [
    "FrameSyncError",
    "VaultLockedError",
    "VaultKeyNotFoundError",
    "VaultUnlockError",
    "DecryptionError",
    "PermissionDeniedError",
    "UnsupportedSimulationError",
    "StaleSnapshotError",
    "ExternalCommitError",
    "RuleDefinitionError",
]
