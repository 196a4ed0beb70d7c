"""
Core pipeline package.

This package contains the import/migration logic and is independent of any
concrete backend (Firestore, SQLite, local files). Backends are injected via
the protocols in `harvest.store`.

We intentionally keep exports minimal; consumers should usually import from the
specific module they need (e.g. `harvest.core.pipeline`).
"""

from __future__ import annotations

__all__: list[str] = [
    "HarvestError",
    "ConfigError",
    "CredentialsError",
    "StoreError",
    "DedupError",
    "BatchWriteError",
]


class HarvestError(Exception):
    """Base class for harvest exceptions."""


class ConfigError(HarvestError):
    """Raised when the configuration file or environment is invalid."""


class CredentialsError(HarvestError):
    """Raised when the service-account credential cannot be resolved."""


class StoreError(HarvestError):
    """Raised by backends when a catalog or object store call fails."""


class DedupError(HarvestError):
    """Raised when an existence lookup chunk fails."""


class BatchWriteError(HarvestError):
    """
    Raised when a batch commit fails.

    Chunks committed before the failure stay persisted; `committed` tells the
    operator how many records made it.
    """

    def __init__(self, message: str, *, committed: int) -> None:
        super().__init__(message)
        self.committed = committed
