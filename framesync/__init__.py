"""FrameSync: rule-driven financial automation with a simulate-before-commit pipeline."""

from .errors import (
    DecryptionError,
    ExternalCommitError,
    FrameSyncError,
    PermissionDeniedError,
    RuleDefinitionError,
    StaleSnapshotError,
    UnsupportedSimulationError,
    VaultKeyNotFoundError,
    VaultLockedError,
    VaultUnlockError,
)

__version__ = "0.1.0"

__all__ = [
    "DecryptionError",
    "ExternalCommitError",
    "FrameSyncError",
    "PermissionDeniedError",
    "RuleDefinitionError",
    "StaleSnapshotError",
    "UnsupportedSimulationError",
    "VaultKeyNotFoundError",
    "VaultLockedError",
    "VaultUnlockError",
    "__version__",
]
