"""CLI commands for volume data: resticprov backup/restore/locations."""

from __future__ import annotations

from pathlib import Path

import click

from resticprov.core.config import (
    load_config,
    load_policy,
    load_storage_location,
    password_selector,
    resolve_home,
)
from resticprov.core.credentials import CredentialFileStore
from resticprov.core.errors import UploaderError
from resticprov.core.models import OperationContext, PersistentVolumeMode, Progress
from resticprov.providers.registry import registry
from resticprov.restic.environment import repository_identifier


class ClickProgressUpdater:
    """Echo progress reports to the terminal."""

    def __init__(self) -> None:
        self.last: Progress | None = None

    def update_progress(self, progress: Progress) -> None:
        self.last = progress
        if progress.total_bytes:
            pct = 100.0 * progress.bytes_done / progress.total_bytes
            click.echo(f"  {progress.bytes_done}/{progress.total_bytes} bytes ({pct:.0f}%)")
        else:
            click.echo(f"  {progress.bytes_done} bytes")


def _parse_tags(values: tuple[str, ...]) -> dict[str, str]:
    tags: dict[str, str] = {}
    for value in values:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {value!r}", param_hint="--tag")
        tags[key] = val
    return tags


def _open_provider(home: Path, location: str, namespace: str, repo: str | None):
    """Build the restic provider for a configured storage location."""
    config = load_config(home / "config.yaml")
    try:
        bsl = load_storage_location(config, location)
    except KeyError as e:
        raise click.ClickException(str(e.args[0])) from e
    except OSError as e:
        raise click.ClickException(f"Cannot read CA certificate for {location}: {e}") from e

    try:
        repo_id = repo or repository_identifier(bsl, namespace)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    cred_store = CredentialFileStore(Path(config["credentials"]["dir"]))
    try:
        provider = registry.get(
            "uploader",
            "restic",
            repo_identifier=repo_id,
            bsl=bsl,
            cred_store=cred_store,
            repo_key_selector=password_selector(config),
            config=config["restic"],
        )
    except UploaderError as e:
        raise click.ClickException(f"Cannot set up restic for {location}: {e}") from e
    return provider, config


_home_option = click.option(
    "--home",
    type=click.Path(path_type=Path),
    default=None,
    help="Override RESTICPROV_HOME path.",
)
_location_option = click.option(
    "--location", "-l", default="default", show_default=True,
    help="Storage location name from config.yaml.",
)
_namespace_option = click.option(
    "--namespace", "-n", default="default", show_default=True,
    help="Volume namespace; selects the repository inside the location.",
)
_repo_option = click.option("--repo", default=None, help="Explicit restic repository.")
_block_option = click.option("--block", is_flag=True, help="Treat the volume as a block device.")


@click.command("backup")
@click.argument("path", type=click.Path(path_type=Path))
@_home_option
@_location_option
@_namespace_option
@_repo_option
@click.option("--tag", "tags", multiple=True, help="Snapshot tag KEY=VALUE (repeatable).")
@click.option("--parent", default="", help="Parent snapshot for incremental backup.")
@click.option("--policy", default=None, help="Policy name from config.yaml.")
@click.option("--force-full", is_flag=True, help="Request a full backup.")
@_block_option
def backup_cmd(
    path: Path,
    home: Path | None,
    location: str,
    namespace: str,
    repo: str | None,
    tags: tuple[str, ...],
    parent: str,
    policy: str | None,
    force_full: bool,
    block: bool,
) -> None:
    """Back up the directory PATH into the location's restic repository."""
    home_path = home or resolve_home()
    tag_map = _parse_tags(tags)
    provider, config = _open_provider(home_path, location, namespace, repo)
    ctx = OperationContext(policy=load_policy(config, policy))
    mode = PersistentVolumeMode.BLOCK if block else PersistentVolumeMode.FILESYSTEM

    click.echo(f"Backing up {path} to {provider.repo_identifier}...")
    try:
        with provider:
            snapshot_id, is_empty = provider.backup(
                ctx, str(path.resolve()), "", tag_map, force_full, parent, mode,
                ClickProgressUpdater(),
            )
    except UploaderError as e:
        raise click.ClickException(str(e)) from e

    if is_empty:
        click.echo("Nothing to back up: source is empty.")
    else:
        click.echo(f"Snapshot: {snapshot_id}")


@click.command("restore")
@click.argument("snapshot")
@click.argument("target", type=click.Path(path_type=Path))
@_home_option
@_location_option
@_namespace_option
@_repo_option
@_block_option
def restore_cmd(
    snapshot: str,
    target: Path,
    home: Path | None,
    location: str,
    namespace: str,
    repo: str | None,
    block: bool,
) -> None:
    """Restore SNAPSHOT into the directory TARGET."""
    home_path = home or resolve_home()
    provider, _config = _open_provider(home_path, location, namespace, repo)
    mode = PersistentVolumeMode.BLOCK if block else PersistentVolumeMode.FILESYSTEM

    click.echo(f"Restoring {snapshot} into {target}...")
    try:
        with provider:
            provider.restore(
                OperationContext(), snapshot, str(target.resolve()), mode, ClickProgressUpdater(),
            )
    except UploaderError as e:
        raise click.ClickException(str(e)) from e
    click.echo("Restore complete.")


@click.command("locations")
@_home_option
def locations_cmd(home: Path | None) -> None:
    """List configured storage locations."""
    home_path = home or resolve_home()
    config = load_config(home_path / "config.yaml")
    locations = config.get("locations") or {}

    if not locations:
        click.echo("No storage locations configured.")
        click.echo("Configure in config.yaml under locations.")
        return

    for name in sorted(locations):
        try:
            bsl = load_storage_location(config, name)
        except OSError as e:
            click.echo(f"  {name}: ERROR ({e})")
            continue
        bucket = bsl.object_storage.bucket if bsl.object_storage else "-"
        ca = " ca-cert" if bsl.object_storage and bsl.object_storage.ca_cert else ""
        click.echo(f"  {name}: {bsl.provider} bucket={bucket}{ca}")
