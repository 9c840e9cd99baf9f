"""Restic command descriptors and the factories that build them."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_BINARY = "restic"
DEFAULT_HOST = "resticprov"


@dataclass(frozen=True)
class Command:
    """One restic invocation.

    Rendered as::

        <binary> <command> --repo=<id> --password-file=<path> [--cacert=<path>]
            [--cache-dir=<dir>/.cache/restic] <args...> <extra_flags...>
    """

    command: str
    repo_identifier: str
    password_file: str
    dir: str = ""
    args: tuple[str, ...] = ()
    extra_flags: tuple[str, ...] = ()
    env: tuple[str, ...] = ()  # "KEY=VALUE"; empty means inherit os.environ
    ca_cert_file: str = ""
    binary: str = DEFAULT_BINARY
    cache_dir: str = ""

    def string_slice(self) -> list[str]:
        """Return the argv of this command."""
        res = [self.binary, self.command, f"--repo={self.repo_identifier}"]
        if self.password_file:
            res.append(f"--password-file={self.password_file}")
        if self.ca_cert_file:
            res.append(f"--cacert={self.ca_cert_file}")
        if self.cache_dir:
            res.append(f"--cache-dir={self.cache_dir}/.cache/restic")
        res.extend(self.args)
        res.extend(self.extra_flags)
        return res

    def env_dict(self) -> dict[str, str] | None:
        """Return env as a mapping for subprocess, or None to inherit."""
        if not self.env:
            return None
        result: dict[str, str] = {}
        for entry in self.env:
            key, sep, value = entry.partition("=")
            if sep:
                result[key] = value
        return result

    def __str__(self) -> str:
        return " ".join(self.string_slice())


def backup_tag_flags(tags: dict[str, str] | None) -> list[str]:
    """One ``--tag=k=v`` flag per tag, sorted by key."""
    return [f"--tag={k}={v}" for k, v in sorted((tags or {}).items())]


def snapshot_tag_flag(tags: dict[str, str] | None) -> str:
    """A single ``--tag`` flag matching snapshots that carry every tag."""
    return "--tag=" + ",".join(f"{k}={v}" for k, v in sorted((tags or {}).items()))


def backup_command(
    repo_identifier: str,
    password_file: str,
    path: str,
    tags: dict[str, str] | None,
    host: str = DEFAULT_HOST,
) -> Command:
    """Back up everything under ``path``; restic runs from inside it."""
    return Command(
        command="backup",
        repo_identifier=repo_identifier,
        password_file=password_file,
        dir=path,
        args=(".",),
        extra_flags=(*backup_tag_flags(tags), f"--host={host}", "--json"),
    )


def snapshot_lookup_command(
    repo_identifier: str,
    password_file: str,
    tags: dict[str, str] | None,
    host: str = DEFAULT_HOST,
    path: str = "",
) -> Command:
    """Find the latest snapshot carrying ``tags``.

    ``--latest=1`` keeps one snapshot per host and path group, so the lookup
    is narrowed to ``host`` and, when given, the backed-up ``path``.
    """
    extra = (snapshot_tag_flag(tags),) if tags else ()
    extra += (f"--host={host}",)
    if path:
        extra += (f"--path={path}",)
    return Command(
        command="snapshots",
        repo_identifier=repo_identifier,
        password_file=password_file,
        args=("--json", "--latest=1"),
        extra_flags=extra,
    )


def restore_command(
    repo_identifier: str,
    password_file: str,
    snapshot_id: str,
    target: str,
) -> Command:
    """Restore ``snapshot_id`` into ``target``; restic runs from inside it."""
    return Command(
        command="restore",
        repo_identifier=repo_identifier,
        password_file=password_file,
        dir=target,
        args=(snapshot_id,),
        extra_flags=("--target=.",),
    )


def stats_command(
    repo_identifier: str,
    password_file: str,
    snapshot_id: str,
) -> Command:
    return Command(
        command="stats",
        repo_identifier=repo_identifier,
        password_file=password_file,
        args=("--json", snapshot_id),
    )
