"""Exceptions raised by uploader providers."""

from __future__ import annotations


class UploaderError(Exception):
    """Base class for uploader provider failures."""


class ConstructionError(UploaderError):
    """Raised when a provider cannot be built; no provider is returned."""


class CredentialProvisionError(ConstructionError):
    """Raised when the repository credential cannot be materialized."""


class InvalidInputError(UploaderError):
    """Raised when call arguments use a feature this backend does not support."""


class MissingUpdaterError(UploaderError):
    """Raised when a call is made without a progress updater."""


class ExecutionError(UploaderError):
    """Raised when restic ran and failed."""

    def __init__(self, message: str, command: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class SnapshotResolutionError(UploaderError):
    """Raised when a backup finished but its snapshot id could not be looked up."""


class CleanupError(UploaderError):
    """Raised when provisioned files could not be removed."""

    def __init__(self, failures: list[str]) -> None:
        super().__init__("; ".join(failures))
        self.failures = failures
