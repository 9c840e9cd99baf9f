"""UploaderProvider and ProgressUpdater Protocols."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from resticprov.core.models import OperationContext, PersistentVolumeMode, Progress


@runtime_checkable
class ProgressUpdater(Protocol):
    """Receives progress while a backup or restore is running."""

    def update_progress(self, progress: Progress) -> None:
        ...


@runtime_checkable
class UploaderProvider(Protocol):
    """Contract for volume backup/restore backends."""

    @property
    def name(self) -> str:
        """Unique provider ID: 'restic', etc."""
        ...

    def backup(
        self,
        ctx: OperationContext | None,
        path: str,
        real_source: str,
        tags: dict[str, str] | None,
        force_full: bool,
        parent_snapshot: str,
        vol_mode: PersistentVolumeMode,
        updater: ProgressUpdater | None,
    ) -> tuple[str, bool]:
        """Back up ``path``. Returns (snapshot_id, is_empty)."""
        ...

    def restore(
        self,
        ctx: OperationContext | None,
        snapshot_id: str,
        volume_path: str,
        vol_mode: PersistentVolumeMode,
        updater: ProgressUpdater | None,
    ) -> None:
        """Restore ``snapshot_id`` into ``volume_path``."""
        ...

    def close(self, ctx: OperationContext | None = None) -> None:
        """Release resources provisioned for this provider."""
        ...
