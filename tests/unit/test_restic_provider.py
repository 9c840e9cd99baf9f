"""Tests for resticprov.providers.uploader.restic — ResticUploaderProvider."""

import os
from pathlib import Path

import pytest

from resticprov.core import credentials
from resticprov.core.credentials import CredentialFileStore
from resticprov.core.errors import (
    CleanupError,
    ConstructionError,
    CredentialProvisionError,
    ExecutionError,
    InvalidInputError,
    MissingUpdaterError,
    SnapshotResolutionError,
)
from resticprov.core.models import (
    BackupStorageLocation,
    ObjectStorage,
    OperationContext,
    PersistentVolumeMode,
    Progress,
    ResticPolicy,
    SecretKeySelector,
)
from resticprov.providers.uploader.base import UploaderProvider
from resticprov.providers.uploader.restic import (
    ResticUploaderProvider,
    is_empty_snapshot_error,
    resolve_exclude,
)
from resticprov.restic.environment import ResticEnvironment
from resticprov.restic.runner import ResticCommandError

FS = PersistentVolumeMode.FILESYSTEM
BLOCK = PersistentVolumeMode.BLOCK
SELECTOR = SecretKeySelector(name="restic-repo", key="password")


class _FakeCredStore:
    def __init__(self, directory: Path, fail: bool = False) -> None:
        self.directory = directory
        self.fail = fail

    def path(self, selector):
        if self.fail:
            raise CredentialProvisionError("keyring locked")
        self.directory.mkdir(parents=True, exist_ok=True)
        p = self.directory / f"{selector.name}-{selector.key}"
        p.write_text("secret", encoding="utf-8")
        return p


class _PathStore:
    """Returns a fixed value from ``path`` without writing anything."""

    def __init__(self, value) -> None:
        self.value = value

    def path(self, selector):
        return self.value


class _FakeRunner:
    def __init__(
        self,
        backup_error: Exception | None = None,
        lookup_error: Exception | None = None,
        restore_error: Exception | None = None,
        snapshot_id: str = "abc123",
    ) -> None:
        self.backup_error = backup_error
        self.lookup_error = lookup_error
        self.restore_error = restore_error
        self.snapshot_id = snapshot_id
        self.calls: list[tuple[str, object]] = []

    def run_backup(self, cmd, updater, ctx=None):
        self.calls.append(("backup", cmd))
        if self.backup_error:
            raise self.backup_error
        updater.update_progress(Progress(total_bytes=10, bytes_done=10))
        return '{"message_type":"summary"}', ""

    def get_snapshot_id(self, cmd):
        self.calls.append(("snapshots", cmd))
        if self.lookup_error:
            raise self.lookup_error
        return self.snapshot_id

    def run_restore(self, cmd, updater, ctx=None):
        self.calls.append(("restore", cmd))
        if self.restore_error:
            raise self.restore_error
        return "restored", ""


def _bsl(
    ca_cert: bytes | None = None,
    provider: str = "aws",
    config: dict | None = None,
    credential: SecretKeySelector | None = None,
):
    return BackupStorageLocation(
        name="primary",
        provider=provider,
        object_storage=ObjectStorage(bucket="backups", prefix="cluster", ca_cert=ca_cert),
        config=config if config is not None else {"region": "eu-west-1"},
        credential=credential,
    )


def _provider(
    tmp_path: Path, runner=None, cred_store=None, **bsl_kwargs,
) -> ResticUploaderProvider:
    return ResticUploaderProvider(
        repo_identifier="s3:s3.amazonaws.com/backups/cluster/restic/ns",
        bsl=_bsl(**bsl_kwargs),
        cred_store=cred_store or _FakeCredStore(tmp_path / "creds"),
        repo_key_selector=SELECTOR,
        runner=runner or _FakeRunner(),
        environment=ResticEnvironment(temp_dir=tmp_path),
    )


class TestConstruction:
    def test_is_uploader_provider(self, tmp_path: Path):
        assert isinstance(_provider(tmp_path), UploaderProvider)

    def test_writes_credentials_and_ca(self, tmp_path: Path):
        p = _provider(tmp_path, ca_cert=b"-----BEGIN CERTIFICATE-----")
        assert p.credentials_file is not None and p.credentials_file.exists()
        assert p.ca_cert_file is not None
        assert p.ca_cert_file.read_bytes() == b"-----BEGIN CERTIFICATE-----"
        assert p.ca_cert_file.name.startswith("cacert-primary-")

    def test_no_ca_cert(self, tmp_path: Path):
        p = _provider(tmp_path)
        assert p.ca_cert_file is None

    def test_insecure_tls_flag(self, tmp_path: Path):
        p = _provider(tmp_path, config={"insecureSkipTLSVerify": "true"})
        assert p.extra_flags == ["--insecure-tls"]

    def test_empty_repo_identifier(self, tmp_path: Path):
        with pytest.raises(ConstructionError):
            ResticUploaderProvider(
                repo_identifier="",
                bsl=_bsl(),
                cred_store=_FakeCredStore(tmp_path),
                repo_key_selector=SELECTOR,
                runner=_FakeRunner(),
            )

    def test_credential_failure(self, tmp_path: Path):
        with pytest.raises(CredentialProvisionError, match="credentials file"):
            ResticUploaderProvider(
                repo_identifier="repo",
                bsl=_bsl(),
                cred_store=_FakeCredStore(tmp_path, fail=True),
                repo_key_selector=SELECTOR,
                runner=_FakeRunner(),
            )

    def test_env_failure_removes_provisioned_files(self, tmp_path: Path):
        cred_dir = tmp_path / "creds"
        with pytest.raises(ConstructionError, match="cmd env"):
            ResticUploaderProvider(
                repo_identifier="repo",
                bsl=_bsl(
                    ca_cert=b"pem", provider="azure", config={},
                    credential=SecretKeySelector("cloud", "azure"),
                ),
                cred_store=_FakeCredStore(cred_dir),
                repo_key_selector=SELECTOR,
                runner=_FakeRunner(),
                environment=ResticEnvironment(temp_dir=tmp_path),
            )
        assert list(cred_dir.iterdir()) == []
        assert list(tmp_path.glob("cacert-*")) == []

    @pytest.mark.parametrize("returned", ["", None])
    def test_empty_credentials_path(self, tmp_path: Path, returned):
        with pytest.raises(ConstructionError, match="credentials file path is empty"):
            _provider(tmp_path, cred_store=_PathStore(returned))

    def test_location_credential_in_env(self, tmp_path: Path):
        p = _provider(tmp_path, credential=SecretKeySelector("cloud", "aws"))
        cloud_file = tmp_path / "creds" / "cloud-aws"
        assert cloud_file.exists()
        assert f"AWS_SHARED_CREDENTIALS_FILE={cloud_file}" in p.cmd_env


class TestBackupValidation:
    def test_missing_updater(self, tmp_path: Path):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner)
        with pytest.raises(MissingUpdaterError):
            p.backup(None, "/data", "", {}, False, "", FS, None)
        assert runner.calls == []

    def test_empty_path(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner)
        with pytest.raises(InvalidInputError, match="path is empty"):
            p.backup(None, "", "", {}, False, "", FS, updater)
        assert runner.calls == []

    def test_real_source_unsupported(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner)
        with pytest.raises(InvalidInputError, match="real source"):
            p.backup(None, "/data", "/host/data", {}, False, "", FS, updater)
        assert runner.calls == []

    def test_block_mode_unsupported(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner)
        with pytest.raises(InvalidInputError, match="block mode"):
            p.backup(None, "/data", "", {"a": "1"}, True, "parent", BLOCK, updater)
        assert runner.calls == []


class TestBackup:
    def test_success_returns_snapshot_id(self, tmp_path: Path, updater):
        runner = _FakeRunner(snapshot_id="f00dcafe")
        p = _provider(tmp_path, runner)
        snapshot_id, is_empty = p.backup(None, "/data", "", {"ns": "prod"}, False, "", FS, updater)
        assert (snapshot_id, is_empty) == ("f00dcafe", False)
        assert [k for k, _ in runner.calls] == ["backup", "snapshots"]
        assert updater.reports == [Progress(total_bytes=10, bytes_done=10)]

    def test_backup_command_shape(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner, config={"insecureSkipTLSVerify": "true"})
        p.backup(None, "/data/src", "", {"b": "2", "a": "1"}, False, "prev1", FS, updater)

        cmd = runner.calls[0][1]
        assert cmd.command == "backup"
        assert cmd.dir == "/data/src"
        assert cmd.args == (".",)
        assert cmd.password_file == str(p.credentials_file)
        assert list(cmd.extra_flags) == [
            "--tag=a=1",
            "--tag=b=2",
            "--host=resticprov",
            "--json",
            "--insecure-tls",
            "--parent=prev1",
        ]

    def test_policy_overlay(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner, config={"insecureSkipTLSVerify": "true"})
        policy = ResticPolicy(
            excludes=["/etc/foo", "logs/*.tmp"],
            env=["RESTIC_COMPRESSION=max"],
            extra_flags=["--one-file-system"],
        )
        p.backup(OperationContext(policy=policy), "/data/src", "", {}, False, "", FS, updater)

        cmd = runner.calls[0][1]
        assert list(cmd.extra_flags) == [
            "--host=resticprov",
            "--json",
            "--insecure-tls",
            "--exclude",
            "/data/src/etc/foo",
            "--exclude",
            "logs/*.tmp",
            "--one-file-system",
        ]
        assert cmd.env[-1] == "RESTIC_COMPRESSION=max"
        assert "RESTIC_COMPRESSION=max" not in p.cmd_env
        assert p.extra_flags == ["--insecure-tls"]

    def test_builds_are_deterministic(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner)
        ctx = OperationContext(policy=ResticPolicy(excludes=["/x", "y"]))
        tags = {"z": "1", "a": "2", "m": "3"}
        p.backup(ctx, "/data", "", tags, False, "p", FS, updater)
        p.backup(ctx, "/data", "", dict(reversed(list(tags.items()))), False, "p", FS, updater)
        backups = [cmd for k, cmd in runner.calls if k == "backup"]
        assert backups[0] == backups[1]

    def test_lookup_uses_same_context(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        p = _provider(
            tmp_path, runner, ca_cert=b"pem", config={"insecureSkipTLSVerify": "true"},
        )
        p.backup(None, "/data", "", {"ns": "prod", "pod": "db-0"}, False, "", FS, updater)

        backup_cmd = runner.calls[0][1]
        lookup = runner.calls[1][1]
        assert lookup.command == "snapshots"
        assert lookup.repo_identifier == backup_cmd.repo_identifier
        assert lookup.password_file == backup_cmd.password_file
        assert lookup.ca_cert_file == str(p.ca_cert_file)
        assert lookup.env == backup_cmd.env
        assert list(lookup.extra_flags) == [
            "--tag=ns=prod,pod=db-0",
            "--host=resticprov",
            f"--path={os.path.realpath('/data')}",
            "--insecure-tls",
        ]

    def test_lookup_scoped_without_tags(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        src = tmp_path / "src"
        src.mkdir()
        p = _provider(tmp_path, runner)
        p.backup(None, str(src), "", None, False, "", FS, updater)

        lookup = runner.calls[1][1]
        assert list(lookup.extra_flags) == [
            "--host=resticprov", f"--path={os.path.realpath(src)}",
        ]

    def test_empty_snapshot(self, tmp_path: Path, updater):
        err = ResticCommandError(
            "exit status 1", stderr="Fatal: unable to save snapshot: snapshot is empty\n",
        )
        runner = _FakeRunner(backup_error=err)
        p = _provider(tmp_path, runner)
        assert p.backup(None, "/data", "", {}, False, "", FS, updater) == ("", True)
        assert [k for k, _ in runner.calls] == ["backup"]

    def test_failure_carries_command_and_stderr(self, tmp_path: Path, updater):
        err = ResticCommandError("exit status 1", stderr="Fatal: repository is already locked")
        p = _provider(tmp_path, _FakeRunner(backup_error=err))
        with pytest.raises(ExecutionError) as exc_info:
            p.backup(None, "/data", "", {}, False, "", FS, updater)
        e = exc_info.value
        assert "restic backup" in e.command
        assert "--json" in e.command
        assert e.stderr == "Fatal: repository is already locked"
        assert "exit status 1" in str(e)
        assert "already locked" in str(e)

    def test_lookup_failure_fails_backup(self, tmp_path: Path, updater):
        runner = _FakeRunner(lookup_error=ResticCommandError("got 0 snapshots"))
        p = _provider(tmp_path, runner)
        with pytest.raises(SnapshotResolutionError, match="got 0 snapshots"):
            p.backup(None, "/data", "", {}, False, "", FS, updater)

    def test_empty_lookup_result_fails_backup(self, tmp_path: Path, updater):
        p = _provider(tmp_path, _FakeRunner(snapshot_id=""))
        with pytest.raises(SnapshotResolutionError):
            p.backup(None, "/data", "", {}, False, "", FS, updater)


class TestRestore:
    def test_success(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner, config={"insecureSkipTLSVerify": "true"})
        p.restore(None, "abc123", "/restore/here", FS, updater)

        cmd = runner.calls[0][1]
        assert cmd.command == "restore"
        assert cmd.dir == "/restore/here"
        assert cmd.args == ("abc123",)
        assert list(cmd.extra_flags) == ["--target=.", "--insecure-tls"]

    def test_block_mode(self, tmp_path: Path, updater):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner)
        with pytest.raises(InvalidInputError):
            p.restore(None, "abc123", "/restore", BLOCK, updater)
        assert runner.calls == []

    def test_missing_updater(self, tmp_path: Path):
        runner = _FakeRunner()
        p = _provider(tmp_path, runner)
        with pytest.raises(MissingUpdaterError):
            p.restore(None, "abc123", "/restore", FS, None)
        assert runner.calls == []

    def test_failure(self, tmp_path: Path, updater):
        err = ResticCommandError("exit status 1", stderr="Fatal: no matching ID found")
        p = _provider(tmp_path, _FakeRunner(restore_error=err))
        with pytest.raises(ExecutionError) as exc_info:
            p.restore(None, "missing", "/restore", FS, updater)
        assert exc_info.value.stderr == "Fatal: no matching ID found"
        assert "restic restore" in exc_info.value.command


class TestClose:
    def test_removes_files(self, tmp_path: Path):
        p = _provider(tmp_path, ca_cert=b"pem")
        cred, ca = p.credentials_file, p.ca_cert_file
        p.close()
        assert not cred.exists()
        assert not ca.exists()

    def test_close_twice(self, tmp_path: Path):
        p = _provider(tmp_path, ca_cert=b"pem")
        p.close()
        p.close()

    def test_context_manager(self, tmp_path: Path):
        with _provider(tmp_path) as p:
            cred = p.credentials_file
            assert cred.exists()
        assert not cred.exists()

    def test_removes_location_credential(self, tmp_path: Path):
        p = _provider(tmp_path, ca_cert=b"pem", credential=SecretKeySelector("cloud", "aws"))
        assert len(list((tmp_path / "creds").iterdir())) == 2
        p.close()
        assert list((tmp_path / "creds").iterdir()) == []
        assert list(tmp_path.glob("cacert-*")) == []

    def test_shared_selector_files_are_independent(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(credentials, "_get_secret", lambda service, key: "repo-password")
        store = CredentialFileStore(tmp_path / "creds")
        a = _provider(tmp_path, cred_store=store, credential=SecretKeySelector("cloud", "aws"))
        b = _provider(tmp_path, cred_store=store, credential=SecretKeySelector("cloud", "aws"))
        assert a.credentials_file != b.credentials_file

        a.close()

        assert not a.credentials_file.exists()
        assert b.credentials_file.read_text(encoding="utf-8") == "repo-password"
        b_env = dict(entry.split("=", 1) for entry in b.cmd_env)
        assert Path(b_env["AWS_SHARED_CREDENTIALS_FILE"]).exists()

        b.close()
        assert list((tmp_path / "creds").iterdir()) == []

    def test_attempts_both_removals(self, tmp_path: Path):
        p = _provider(tmp_path, ca_cert=b"pem")
        # A directory in place of the credential file cannot be unlinked
        p.credentials_file.unlink()
        p.credentials_file.mkdir()

        with pytest.raises(CleanupError) as exc_info:
            p.close()
        assert len(exc_info.value.failures) == 1
        assert str(p.credentials_file) in exc_info.value.failures[0]
        assert not p.ca_cert_file.exists()


class TestHelpers:
    def test_absolute_exclude_is_anchored(self):
        assert resolve_exclude("/etc/foo", "/data/src") == "/data/src/etc/foo"

    def test_relative_exclude_unchanged(self):
        assert resolve_exclude("logs/*.tmp", "/data/src") == "logs/*.tmp"

    def test_exclude_cannot_escape(self):
        assert resolve_exclude("/../../etc/passwd", "/data/src") == "/data/src/etc/passwd"

    def test_root_exclude(self):
        assert resolve_exclude("/", "/data/src") == "/data/src"

    def test_empty_snapshot_predicate(self):
        assert is_empty_snapshot_error("Fatal: unable to save snapshot: snapshot is empty")
        assert not is_empty_snapshot_error("Fatal: wrong password")
        assert not is_empty_snapshot_error("")
