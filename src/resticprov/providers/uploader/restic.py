"""Restic uploader provider — backs up and restores volumes with the restic CLI."""

from __future__ import annotations

import contextlib
import logging
import os
import posixpath
from dataclasses import replace
from pathlib import Path

from resticprov.core.errors import (
    CleanupError,
    ConstructionError,
    CredentialProvisionError,
    ExecutionError,
    InvalidInputError,
    MissingUpdaterError,
    SnapshotResolutionError,
)
from resticprov.core.fileutil import remove_file
from resticprov.core.models import (
    BackupStorageLocation,
    OperationContext,
    PersistentVolumeMode,
    SecretKeySelector,
)
from resticprov.providers.uploader.base import ProgressUpdater
from resticprov.restic.command import (
    DEFAULT_BINARY,
    DEFAULT_HOST,
    Command,
    backup_command,
    restore_command,
    snapshot_lookup_command,
)
from resticprov.restic.environment import ResticEnvironment
from resticprov.restic.runner import CommandRunner, ResticCommandError, SubprocessRunner

log = logging.getLogger(__name__)

EMPTY_SNAPSHOT_MARKER = "snapshot is empty"


def is_empty_snapshot_error(stderr: str) -> bool:
    """True if restic refused to write a snapshot because there was nothing to save.

    restic signals this only through its stderr wording, so a change in that
    message turns empty backups into failures.
    """
    return EMPTY_SNAPSHOT_MARKER in stderr


def resolve_exclude(pattern: str, workdir: str) -> str:
    """Anchor an absolute exclude pattern under the backup's working directory.

    restic runs from inside the volume, so ``/etc/foo`` must become
    ``<workdir>/etc/foo``. The pattern is normalized first, so ``..``
    segments cannot climb above ``workdir``. Relative patterns are returned
    unchanged.
    """
    if not pattern.startswith("/"):
        return pattern
    relative = posixpath.normpath(pattern).lstrip("/")
    if not relative:
        return workdir
    return posixpath.join(workdir, relative)


class _RecordingCredentialStore:
    """Passes ``path`` through to a credential store and remembers each file it returns."""

    def __init__(self, store, provisioned: list[Path]) -> None:
        self._store = store
        self._provisioned = provisioned

    def path(self, selector: SecretKeySelector | None) -> Path:
        result = self._store.path(selector)
        if result:
            self._provisioned.append(Path(result))
        return result


class ResticUploaderProvider:
    """Drives restic for one storage location and repository.

    Construction writes the repository password (plus the location's CA
    certificate and cloud credential, if any) to disk; ``close`` removes
    every file it wrote.
    """

    def __init__(
        self,
        repo_identifier: str,
        bsl: BackupStorageLocation,
        cred_store,
        repo_key_selector: SecretKeySelector,
        config: dict | None = None,
        logger: logging.Logger | None = None,
        runner: CommandRunner | None = None,
        environment: ResticEnvironment | None = None,
    ) -> None:
        config = config or {}
        self._log = logger or log
        self._repo_identifier = repo_identifier
        self._bsl = bsl
        self._binary = config.get("binary") or DEFAULT_BINARY
        self._host = config.get("host") or DEFAULT_HOST
        self._cache_dir = config.get("cache_dir") or ""
        self._runner = runner or SubprocessRunner(config)

        self._credentials_file: Path | None = None
        self._ca_cert_file: Path | None = None
        # Cloud credential files written while building the command env
        self._location_credential_files: list[Path] = []
        self._cmd_env: tuple[str, ...] = ()
        self._extra_flags: tuple[str, ...] = ()

        if not repo_identifier:
            raise ConstructionError("repository identifier is empty")

        try:
            self._provision(cred_store, repo_key_selector, environment or ResticEnvironment())
        except BaseException:
            self._discard_provisioned()
            raise

    def _provision(
        self,
        cred_store,
        repo_key_selector: SecretKeySelector,
        environment: ResticEnvironment,
    ) -> None:
        bsl = self._bsl
        try:
            credentials_file = cred_store.path(repo_key_selector)
        except (CredentialProvisionError, OSError) as e:
            raise CredentialProvisionError(
                f"error creating temp restic credentials file: {e}"
            ) from e
        if not credentials_file:
            raise ConstructionError("credentials file path is empty")
        self._credentials_file = Path(credentials_file)

        # Write the location's CA certificate to disk so restic can use it
        if bsl.object_storage is not None and bsl.object_storage.ca_cert:
            try:
                self._ca_cert_file = Path(
                    environment.temp_ca_cert_file(bsl.object_storage.ca_cert, bsl.name)
                )
            except OSError as e:
                raise ConstructionError(f"error creating temp cert file: {e}") from e

        try:
            self._cmd_env = tuple(environment.cmd_env(
                bsl, _RecordingCredentialStore(cred_store, self._location_credential_files),
            ))
        except CredentialProvisionError:
            raise
        except (ConstructionError, OSError) as e:
            raise ConstructionError(f"error generating repository cmd env: {e}") from e

        skip_tls = environment.insecure_skip_tls_flag(bsl)
        if skip_tls:
            self._extra_flags = (skip_tls,)

    def _owned_files(self) -> list[Path]:
        files = [self._credentials_file, self._ca_cert_file, *self._location_credential_files]
        return [path for path in files if path is not None]

    def _discard_provisioned(self) -> None:
        for path in self._owned_files():
            with contextlib.suppress(OSError):
                remove_file(path)

    # --- Properties ---

    @property
    def name(self) -> str:
        return "restic"

    @property
    def repo_identifier(self) -> str:
        return self._repo_identifier

    @property
    def storage_location(self) -> BackupStorageLocation:
        return self._bsl

    @property
    def credentials_file(self) -> Path | None:
        return self._credentials_file

    @property
    def ca_cert_file(self) -> Path | None:
        return self._ca_cert_file

    @property
    def cmd_env(self) -> list[str]:
        return list(self._cmd_env)

    @property
    def extra_flags(self) -> list[str]:
        return list(self._extra_flags)

    # --- Command assembly ---

    def _with_base(self, cmd: Command, extra_flags: list[str], env: list[str]) -> Command:
        return replace(
            cmd,
            extra_flags=tuple(extra_flags),
            env=tuple(env),
            ca_cert_file=str(self._ca_cert_file or ""),
            binary=self._binary,
            cache_dir=self._cache_dir,
        )

    def _build_backup_command(
        self,
        ctx: OperationContext | None,
        path: str,
        tags: dict[str, str] | None,
        parent_snapshot: str,
    ) -> Command:
        cmd = backup_command(
            self._repo_identifier, str(self._credentials_file), path, tags, host=self._host,
        )
        flags = [*cmd.extra_flags, *self._extra_flags]
        env = list(self._cmd_env)

        if parent_snapshot:
            flags.append(f"--parent={parent_snapshot}")

        policy = ctx.policy if ctx is not None else None
        if policy is not None:
            self._log.debug("Using restic policy: %r", policy)
            for exclude in policy.excludes:
                flags.extend(("--exclude", resolve_exclude(exclude, cmd.dir)))
            env.extend(policy.env)
            flags.extend(policy.extra_flags)

        return self._with_base(cmd, flags, env)

    def _build_snapshot_lookup_command(
        self, tags: dict[str, str] | None, path: str,
    ) -> Command:
        # restic records the absolute, symlink-free form of the backed-up dir
        cmd = snapshot_lookup_command(
            self._repo_identifier, str(self._credentials_file), tags,
            host=self._host, path=os.path.realpath(path),
        )
        return self._with_base(cmd, [*cmd.extra_flags, *self._extra_flags], list(self._cmd_env))

    def _build_restore_command(self, snapshot_id: str, volume_path: str) -> Command:
        cmd = restore_command(
            self._repo_identifier, str(self._credentials_file), snapshot_id, volume_path,
        )
        return self._with_base(cmd, [*cmd.extra_flags, *self._extra_flags], list(self._cmd_env))

    # --- Operations ---

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
        """Back up ``path`` and return (snapshot_id, is_empty).

        ``force_full`` is accepted for interface compatibility; restic decides
        what to re-read from ``parent_snapshot``.

        Raises:
            MissingUpdaterError: If ``updater`` is None.
            InvalidInputError: On an empty path, a real source, or block mode.
            ExecutionError: If restic fails for any reason other than an empty source.
            SnapshotResolutionError: If the new snapshot's id cannot be looked up.
        """
        if updater is None:
            raise MissingUpdaterError("need to initialize backup progress updater first")
        if not path:
            raise InvalidInputError("path is empty")
        if real_source:
            raise InvalidInputError(
                "real source is not empty, this is not supported by restic uploader"
            )
        if vol_mode == PersistentVolumeMode.BLOCK:
            raise InvalidInputError("unable to support block mode")

        self._log.debug("Backing up %s (parent snapshot %r)", path, parent_snapshot)
        backup_cmd = self._build_backup_command(ctx, path, tags, parent_snapshot)
        self._log.info("Run command=%s", backup_cmd)

        try:
            summary, stderr = self._runner.run_backup(backup_cmd, updater, ctx)
        except ResticCommandError as e:
            if is_empty_snapshot_error(e.stderr):
                self._log.debug("Restic backup got empty dir with %s path", path)
                return "", True
            raise ExecutionError(
                f"error running restic backup command {backup_cmd} "
                f"with error: {e} stderr: {e.stderr}",
                command=str(backup_cmd),
                stderr=e.stderr,
            ) from e

        lookup_cmd = self._build_snapshot_lookup_command(tags, path)
        try:
            snapshot_id = self._runner.get_snapshot_id(lookup_cmd)
        except ResticCommandError as e:
            raise SnapshotResolutionError(f"error getting snapshot id with error: {e}") from e
        if not snapshot_id:
            raise SnapshotResolutionError(
                f"error getting snapshot id: command {lookup_cmd} returned an empty id"
            )

        self._log.info("Run command=%s, stdout=%s, stderr=%s", backup_cmd, summary, stderr)
        return snapshot_id, False

    def restore(
        self,
        ctx: OperationContext | None,
        snapshot_id: str,
        volume_path: str,
        vol_mode: PersistentVolumeMode,
        updater: ProgressUpdater | None,
    ) -> None:
        """Restore ``snapshot_id`` into ``volume_path``.

        Raises:
            MissingUpdaterError: If ``updater`` is None.
            InvalidInputError: In block mode.
            ExecutionError: If restic fails.
        """
        if updater is None:
            raise MissingUpdaterError("need to initialize restore progress updater first")
        if vol_mode == PersistentVolumeMode.BLOCK:
            raise InvalidInputError("unable to support block mode")

        self._log.debug("Restoring snapshot %s into %s", snapshot_id, volume_path)
        restore_cmd = self._build_restore_command(snapshot_id, volume_path)

        try:
            stdout, stderr = self._runner.run_restore(restore_cmd, updater, ctx)
        except ResticCommandError as e:
            self._log.info(
                "Run command=%s, stdout=%s, stderr=%s", restore_cmd, e.stdout, e.stderr,
            )
            raise ExecutionError(
                f"error running restic restore command {restore_cmd} "
                f"with error: {e} stderr: {e.stderr}",
                command=str(restore_cmd),
                stderr=e.stderr,
            ) from e

        self._log.info("Run command=%s, stdout=%s, stderr=%s", restore_cmd, stdout, stderr)

    def close(self, ctx: OperationContext | None = None) -> None:
        """Remove the credential and CA files written at construction.

        Every removal is always attempted. Files that are already gone are
        not an error.

        Raises:
            CleanupError: Listing every file that could not be removed.
        """
        failures: list[str] = []
        for path in self._owned_files():
            try:
                remove_file(path)
            except OSError as e:
                failures.append(f"failed to remove {path}: {e}")
        if failures:
            raise CleanupError(failures)

    def __enter__(self) -> ResticUploaderProvider:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
