"""Configuration loader for resticprov."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path

import yaml

from resticprov.core.models import (
    BackupStorageLocation,
    ObjectStorage,
    ResticPolicy,
    SecretKeySelector,
)

log = logging.getLogger(__name__)

DEFAULTS: dict = {
    "home": "~/.resticprov",
    "restic": {
        "binary": "restic",
        "host": "resticprov",
        "cache_dir": None,
        "progress_interval_seconds": 10,
        # Keyring entry holding the restic repository password
        "password_secret": {"name": "resticprov", "key": "repository-password"},
    },
    "credentials": {
        "dir": None,  # defaults to <home>/credentials
    },
    "locations": {},
    "policies": {},
}


def resolve_home() -> Path:
    """Resolve RESTICPROV_HOME: env var > default ~/.resticprov."""
    env_home = os.environ.get("RESTICPROV_HOME")
    if env_home:
        return Path(env_home).expanduser().resolve()
    return Path(DEFAULTS["home"]).expanduser().resolve()


def config_path(home: Path | None = None) -> Path:
    """Return the path to config.yaml."""
    if home is None:
        home = resolve_home()
    return home / "config.yaml"


def load_config(path: Path | None = None) -> dict:
    """Load config.yaml and merge with defaults.

    Args:
        path: Explicit path to config.yaml. If None, uses default location.

    Returns:
        Merged configuration dict.
    """
    if path is None:
        path = config_path()

    user_config: dict = {}
    if path.exists():
        try:
            raw = path.read_text(encoding="utf-8")
            user_config = yaml.safe_load(raw) or {}
        except (OSError, yaml.YAMLError):
            log.warning("Failed to read config at %s, using defaults", path, exc_info=True)

    merged = _deep_merge(copy.deepcopy(DEFAULTS), user_config)

    # Home: env var > config > directory holding config.yaml
    home_str = (
        os.environ.get("RESTICPROV_HOME") or user_config.get("home") or str(path.parent)
    )
    merged["home"] = str(Path(home_str).expanduser().resolve())

    if not merged["credentials"].get("dir"):
        merged["credentials"]["dir"] = str(Path(merged["home"]) / "credentials")

    return merged


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _selector(raw: dict | None) -> SecretKeySelector | None:
    if not raw:
        return None
    return SecretKeySelector(name=str(raw.get("name", "")), key=str(raw.get("key", "")))


def password_selector(config: dict) -> SecretKeySelector:
    """Return the keyring selector of the restic repository password."""
    selector = _selector(config.get("restic", {}).get("password_secret"))
    if selector is None:
        raise KeyError("restic.password_secret is not configured")
    return selector


def load_storage_location(config: dict, name: str) -> BackupStorageLocation:
    """Build a BackupStorageLocation from the ``locations`` section.

    A CA certificate is taken from ``ca_cert`` (inline PEM) or read from
    ``ca_cert_file``.

    Raises:
        KeyError: If no location with that name is configured.
    """
    locations = config.get("locations") or {}
    raw = locations.get(name)
    if raw is None:
        raise KeyError(f"Unknown storage location: {name!r}")

    ca_cert: bytes | None = None
    if raw.get("ca_cert"):
        ca_cert = str(raw["ca_cert"]).encode("utf-8")
    elif raw.get("ca_cert_file"):
        ca_cert = Path(raw["ca_cert_file"]).expanduser().read_bytes()

    object_storage = None
    if raw.get("bucket"):
        object_storage = ObjectStorage(
            bucket=str(raw["bucket"]),
            prefix=str(raw.get("prefix", "") or ""),
            ca_cert=ca_cert,
        )

    return BackupStorageLocation(
        name=name,
        provider=str(raw.get("provider", "")),
        object_storage=object_storage,
        config={str(k): str(v) for k, v in (raw.get("config") or {}).items()},
        credential=_selector(raw.get("credential")),
    )


def load_policy(config: dict, name: str | None) -> ResticPolicy | None:
    """Build a ResticPolicy from the ``policies`` section. None if not configured."""
    if not name:
        return None
    raw = (config.get("policies") or {}).get(name)
    if raw is None:
        log.warning("Policy %s is not configured, running without one", name)
        return None
    return ResticPolicy(
        excludes=[str(e) for e in raw.get("excludes", [])],
        env=[str(e) for e in raw.get("env", [])],
        extra_flags=[str(f) for f in raw.get("extra_flags", [])],
    )
