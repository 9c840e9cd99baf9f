"""Core data models for resticprov."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum


# --- Enums ---


class PersistentVolumeMode(str, Enum):
    FILESYSTEM = "Filesystem"
    BLOCK = "Block"


# --- Storage location ---


@dataclass(frozen=True)
class SecretKeySelector:
    """Reference to one key of a stored secret."""

    name: str  # keyring service / secret name
    key: str


@dataclass
class ObjectStorage:
    """Bucket coordinates of a storage location."""

    bucket: str
    prefix: str = ""
    ca_cert: bytes | None = None


@dataclass
class BackupStorageLocation:
    """Where backups are written and how to reach it."""

    name: str
    provider: str  # "aws", "gcp", "azure" or a plugin-qualified name
    object_storage: ObjectStorage | None = None
    config: dict[str, str] = field(default_factory=dict)
    credential: SecretKeySelector | None = None


# --- Per-call inputs ---


@dataclass
class ResticPolicy:
    """Resource-policy overlay applied to a single backup call."""

    excludes: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)  # "KEY=VALUE"
    extra_flags: list[str] = field(default_factory=list)


@dataclass
class OperationContext:
    """Request-scoped state threaded through backup and restore calls."""

    policy: ResticPolicy | None = None
    cancel_event: threading.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass
class Progress:
    """A progress report sent to a ProgressUpdater."""

    total_bytes: int = 0
    bytes_done: int = 0
