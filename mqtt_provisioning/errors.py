"""Exceptions raised by the provisioning and sync engine."""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class ProvisioningError(Exception):
    """Base class for provisioning failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class NotFoundError(ProvisioningError, LookupError):
    """A referenced device, credential or rule does not exist."""


class ConflictError(ProvisioningError):
    """A device is already provisioned or a username is taken."""


class ValidationError(ProvisioningError, ValueError):
    """Malformed input such as an unknown permission or empty field."""


class StorageError(ProvisioningError):
    """The underlying store failed to read or write."""


class ArtifactWriteError(ProvisioningError):
    """Writing a broker artifact to disk failed."""

    def __init__(self, path: Union[str, Path], reason: str) -> None:
        super().__init__(f"could not write {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class ReloadError(ProvisioningError):
    """The broker could not be told to reload its configuration."""

    def __init__(self, message: str, *, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


__all__ = [
    "ArtifactWriteError",
    "ConflictError",
    "NotFoundError",
    "ProvisioningError",
    "ReloadError",
    "StorageError",
    "ValidationError",
]
