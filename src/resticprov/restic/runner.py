"""Run restic commands as subprocesses and turn their output into progress."""

from __future__ import annotations

import json
import logging
import subprocess
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol, runtime_checkable

from resticprov.core.fileutil import directory_size
from resticprov.core.models import OperationContext, Progress
from resticprov.providers.uploader.base import ProgressUpdater
from resticprov.restic.command import Command, stats_command
from resticprov.restic.environment import INSECURE_TLS_FLAG

log = logging.getLogger(__name__)

DEFAULT_PROGRESS_INTERVAL = 10.0
_MIN_POLL_INTERVAL = 0.1
_CANCEL_POLL_SECONDS = 0.5


class ResticCommandError(Exception):
    """Raised when a restic command could not be started or exited with an error."""

    def __init__(
        self,
        message: str,
        command: str = "",
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@runtime_checkable
class CommandRunner(Protocol):
    """Contract for executing restic commands."""

    def run_backup(
        self,
        cmd: Command,
        updater: ProgressUpdater,
        ctx: OperationContext | None = None,
    ) -> tuple[str, str]:
        """Run a backup. Returns (summary line, stderr)."""
        ...

    def get_snapshot_id(self, cmd: Command) -> str:
        """Run a snapshot lookup and return the single matching snapshot's id."""
        ...

    def run_restore(
        self,
        cmd: Command,
        updater: ProgressUpdater,
        ctx: OperationContext | None = None,
    ) -> tuple[str, str]:
        """Run a restore. Returns (stdout, stderr)."""
        ...


@dataclass
class BackupStatusLine:
    """One JSON line emitted by ``restic backup --json``."""

    message_type: str = ""
    total_bytes: int = 0
    bytes_done: int = 0
    total_bytes_processed: int = 0
    snapshot_id: str = ""


def decode_backup_status_line(line: str) -> BackupStatusLine:
    """Decode a status or summary line.

    Raises:
        ValueError: If the line is not a JSON object.
    """
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got: {line!r}")
    return BackupStatusLine(
        message_type=str(data.get("message_type", "")),
        total_bytes=int(data.get("total_bytes", 0) or 0),
        bytes_done=int(data.get("bytes_done", 0) or 0),
        total_bytes_processed=int(data.get("total_bytes_processed", 0) or 0),
        snapshot_id=str(data.get("snapshot_id", "") or ""),
    )


def last_line(output: str) -> str:
    """Return the last non-blank line of output, or ""."""
    for line in reversed(output.splitlines()):
        if line.strip():
            return line.strip()
    return ""


def _drain(stream, sink: list[str]) -> None:
    for line in stream:
        sink.append(line)


def _watch_cancel(
    proc: subprocess.Popen,
    ctx: OperationContext,
    done: threading.Event,
    cancelled: threading.Event,
) -> None:
    """Terminate proc once ctx is cancelled, unless it finishes first."""
    while not done.wait(_CANCEL_POLL_SECONDS):
        if ctx.cancelled:
            cancelled.set()
            proc.terminate()
            return


class SubprocessRunner:
    """Runs restic through ``subprocess``.

    Progress is reported at most once per ``progress_interval_seconds``.
    """

    def __init__(self, config: dict | None = None) -> None:
        config = config or {}
        self._interval = float(
            config.get("progress_interval_seconds", DEFAULT_PROGRESS_INTERVAL)
        )

    # --- Process helpers ---

    def _start(self, cmd: Command, ctx: OperationContext | None) -> subprocess.Popen:
        if ctx is not None and ctx.cancelled:
            raise ResticCommandError(
                f"restic {cmd.command} not started: operation cancelled",
                command=str(cmd),
            )
        log.debug("Starting %s (dir=%s)", cmd, cmd.dir or ".")
        try:
            return subprocess.Popen(
                cmd.string_slice(),
                cwd=cmd.dir or None,
                env=cmd.env_dict(),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise ResticCommandError(
                f"error starting {cmd.binary}: {e}", command=str(cmd)
            ) from e

    def _run(self, cmd: Command, ctx: OperationContext | None = None) -> tuple[str, str]:
        """Run to completion. Returns (stdout, stderr); raises on non-zero exit."""
        with self._start(cmd, ctx) as proc:
            while True:
                try:
                    stdout, stderr = proc.communicate(timeout=_CANCEL_POLL_SECONDS)
                    break
                except subprocess.TimeoutExpired:
                    if ctx is not None and ctx.cancelled:
                        proc.terminate()
                        stdout, stderr = proc.communicate()
                        raise ResticCommandError(
                            f"restic {cmd.command} cancelled",
                            command=str(cmd),
                            returncode=proc.returncode,
                            stdout=stdout,
                            stderr=stderr,
                        ) from None

        if proc.returncode != 0:
            raise ResticCommandError(
                f"exit status {proc.returncode}",
                command=str(cmd),
                returncode=proc.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        return stdout, stderr

    # --- Backup ---

    def _report_status(self, line: str, updater: ProgressUpdater) -> None:
        if not line.strip():
            return
        try:
            stat = decode_backup_status_line(line)
        except ValueError:
            log.error("Error getting restic backup progress from %r", line, exc_info=True)
            return
        # Only lines with a non-zero bytes_done carry usable progress
        if stat.bytes_done != 0:
            updater.update_progress(
                Progress(total_bytes=stat.total_bytes, bytes_done=stat.bytes_done)
            )

    def run_backup(
        self,
        cmd: Command,
        updater: ProgressUpdater,
        ctx: OperationContext | None = None,
    ) -> tuple[str, str]:
        """Run ``restic backup --json``, streaming status lines to updater.

        Returns:
            (summary JSON line, captured stderr).

        Raises:
            ResticCommandError: If restic fails, is cancelled, or prints no summary.
        """
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        done = threading.Event()
        cancelled = threading.Event()

        with self._start(cmd, ctx) as proc:
            reader = threading.Thread(
                target=_drain, args=(proc.stderr, stderr_lines), daemon=True,
            )
            reader.start()
            # restic can stay silent for a long time (scanning, lock waits)
            watcher = None
            if ctx is not None:
                watcher = threading.Thread(
                    target=_watch_cancel, args=(proc, ctx, done, cancelled), daemon=True,
                )
                watcher.start()

            try:
                last_update = time.monotonic()
                for line in proc.stdout:
                    stdout_lines.append(line)
                    if cancelled.is_set():
                        continue
                    now = time.monotonic()
                    if now - last_update >= self._interval:
                        last_update = now
                        self._report_status(line, updater)

                proc.wait()
            finally:
                done.set()
                if watcher is not None:
                    watcher.join()
            reader.join()

        stdout = "".join(stdout_lines)
        stderr = "".join(stderr_lines)

        if cancelled.is_set():
            raise ResticCommandError(
                "restic backup cancelled",
                command=str(cmd), returncode=proc.returncode, stdout=stdout, stderr=stderr,
            )
        if proc.returncode != 0:
            raise ResticCommandError(
                f"exit status {proc.returncode}",
                command=str(cmd), returncode=proc.returncode, stdout=stdout, stderr=stderr,
            )

        summary = last_line(stdout)
        try:
            stat = decode_backup_status_line(summary)
        except ValueError as e:
            raise ResticCommandError(
                f"error decoding restic backup summary {summary!r}: {e}",
                command=str(cmd), returncode=proc.returncode, stdout=stdout, stderr=stderr,
            ) from e
        if stat.message_type != "summary":
            raise ResticCommandError(
                f"error getting restic backup summary: {summary}",
                command=str(cmd), returncode=proc.returncode, stdout=stdout, stderr=stderr,
            )

        updater.update_progress(
            Progress(
                total_bytes=stat.total_bytes_processed,
                bytes_done=stat.total_bytes_processed,
            )
        )
        return summary, stderr

    # --- Snapshots ---

    def get_snapshot_id(self, cmd: Command) -> str:
        """Return the short id of the single snapshot ``cmd`` lists.

        Raises:
            ResticCommandError: If restic fails or does not list exactly one snapshot.
        """
        stdout, stderr = self._run(cmd)
        try:
            snapshots = json.loads(stdout)
        except ValueError as e:
            raise ResticCommandError(
                f"error decoding restic snapshots output: {e}",
                command=str(cmd), returncode=0, stdout=stdout, stderr=stderr,
            ) from e

        if not isinstance(snapshots, list) or len(snapshots) != 1:
            count = len(snapshots) if isinstance(snapshots, list) else 0
            raise ResticCommandError(
                f"expected one matching snapshot by command: {cmd}, got {count}",
                command=str(cmd), returncode=0, stdout=stdout, stderr=stderr,
            )

        snapshot = snapshots[0]
        return str(snapshot.get("short_id") or snapshot.get("id", ""))

    def get_snapshot_size(self, cmd: Command) -> int:
        """Return ``total_size`` from ``restic stats --json``."""
        stdout, stderr = self._run(cmd)
        try:
            return int(json.loads(stdout)["total_size"])
        except (ValueError, KeyError, TypeError) as e:
            raise ResticCommandError(
                f"error decoding restic stats output: {e}",
                command=str(cmd), returncode=0, stdout=stdout, stderr=stderr,
            ) from e

    # --- Restore ---

    def _poll_volume_size(
        self,
        volume: Path,
        snapshot_size: int,
        updater: ProgressUpdater,
        stop: threading.Event,
    ) -> None:
        interval = max(self._interval, _MIN_POLL_INTERVAL)
        while not stop.wait(interval):
            try:
                size = directory_size(volume)
            except OSError:
                log.error("Error getting volume size for restore dir %s", volume, exc_info=True)
                return
            if size:
                updater.update_progress(
                    Progress(total_bytes=snapshot_size, bytes_done=size)
                )

    def run_restore(
        self,
        cmd: Command,
        updater: ProgressUpdater,
        ctx: OperationContext | None = None,
    ) -> tuple[str, str]:
        """Run ``restic restore``, reporting the target directory's growth.

        Returns:
            (stdout, stderr).

        Raises:
            ResticCommandError: If the snapshot size lookup or the restore fails.
        """
        insecure = tuple(f for f in cmd.extra_flags if INSECURE_TLS_FLAG in f)
        stats = replace(
            stats_command(cmd.repo_identifier, cmd.password_file, cmd.args[0]),
            ca_cert_file=cmd.ca_cert_file,
            env=cmd.env,
            extra_flags=insecure,
            binary=cmd.binary,
            cache_dir=cmd.cache_dir,
        )
        try:
            snapshot_size = self.get_snapshot_size(stats)
        except ResticCommandError as e:
            raise ResticCommandError(
                f"error getting snapshot size: {e}",
                command=e.command, returncode=e.returncode, stdout=e.stdout, stderr=e.stderr,
            ) from e

        updater.update_progress(Progress(total_bytes=snapshot_size))

        stop = threading.Event()
        poller = threading.Thread(
            target=self._poll_volume_size,
            args=(Path(cmd.dir), snapshot_size, updater, stop),
            daemon=True,
        )
        poller.start()
        try:
            stdout, stderr = self._run(cmd, ctx)
        finally:
            stop.set()
            poller.join()

        updater.update_progress(
            Progress(total_bytes=snapshot_size, bytes_done=snapshot_size)
        )
        return stdout, stderr
