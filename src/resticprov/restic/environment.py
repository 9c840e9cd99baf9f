"""Environment, TLS material and repository naming for restic commands."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from resticprov.core.errors import ConstructionError
from resticprov.core.fileutil import write_temp_file
from resticprov.core.models import BackupStorageLocation

log = logging.getLogger(__name__)

AWS_BACKEND = "aws"
AZURE_BACKEND = "azure"
GCP_BACKEND = "gcp"

INSECURE_TLS_FLAG = "--insecure-tls"


def backend_type(provider: str) -> str:
    """Map a storage provider name to a backend type.

    Accepts bare names ("aws") and plugin-qualified ones ("velero.io/aws").
    Unknown providers are returned unchanged.
    """
    name = provider.rsplit("/", 1)[-1].lower()
    if name in (AWS_BACKEND, AZURE_BACKEND, GCP_BACKEND):
        return name
    return provider


def repository_identifier(bsl: BackupStorageLocation, volume_namespace: str) -> str:
    """Return the restic ``--repo`` value for a volume namespace in a location.

    Raises:
        ValueError: If the location has no object storage or an unsupported backend.
    """
    if bsl.object_storage is None:
        raise ValueError(f"storage location {bsl.name} has no object storage")

    bucket = bsl.object_storage.bucket
    prefix = bsl.object_storage.prefix.strip("/")
    sub_path = "/".join(p for p in (prefix, "restic", volume_namespace) if p)

    backend = backend_type(bsl.provider)
    if backend == AWS_BACKEND:
        url = bsl.config.get("s3Url", "").rstrip("/")
        if not url:
            region = bsl.config.get("region", "")
            url = f"s3-{region}.amazonaws.com" if region else "s3.amazonaws.com"
        return f"s3:{url}/{bucket}/{sub_path}"
    if backend == GCP_BACKEND:
        return f"gs:{bucket}:/{sub_path}"
    if backend == AZURE_BACKEND:
        return f"azure:{bucket}:/{sub_path}"
    raise ValueError(f"unsupported storage provider {bsl.provider!r} for restic")


def temp_ca_cert_file(ca_cert: bytes, bsl_name: str, directory: Path | None = None) -> Path:
    """Write a CA certificate to a uniquely named owner-only temp file."""
    return write_temp_file(ca_cert, prefix=f"cacert-{bsl_name}-", directory=directory)


def _s3_env(config: dict[str, str]) -> dict[str, str]:
    env = {}
    if config.get("credentialsFile"):
        env["AWS_SHARED_CREDENTIALS_FILE"] = config["credentialsFile"]
    if config.get("profile"):
        env["AWS_PROFILE"] = config["profile"]
    return env


def _gcp_env(config: dict[str, str]) -> dict[str, str]:
    if config.get("credentialsFile"):
        return {"GOOGLE_APPLICATION_CREDENTIALS": config["credentialsFile"]}
    return {}


def _azure_env(config: dict[str, str]) -> dict[str, str]:
    account = config.get("storageAccount", "")
    if not account:
        raise ConstructionError("azure storage location is missing config.storageAccount")
    key_var = config.get("storageAccountKeyEnvVar", "")
    if not key_var:
        raise ConstructionError(
            "azure storage location is missing config.storageAccountKeyEnvVar"
        )
    key = os.environ.get(key_var)
    if not key:
        raise ConstructionError(f"environment variable {key_var} is not set")
    return {"AZURE_ACCOUNT_NAME": account, "AZURE_ACCOUNT_KEY": key}


def cmd_env(bsl: BackupStorageLocation, cred_store) -> list[str]:
    """Return the environment for restic commands against a location.

    The current process environment comes first, followed by
    backend-specific variables.

    Raises:
        CredentialProvisionError: If the location's credential cannot be written.
        ConstructionError: If backend configuration is incomplete.
    """
    env = [f"{k}={v}" for k, v in os.environ.items()]

    config = dict(bsl.config)
    if bsl.credential is not None:
        config["credentialsFile"] = str(cred_store.path(bsl.credential))

    backend = backend_type(bsl.provider)
    if backend == AWS_BACKEND:
        custom = _s3_env(config)
    elif backend == AZURE_BACKEND:
        custom = _azure_env(config)
    elif backend == GCP_BACKEND:
        custom = _gcp_env(config)
    else:
        custom = {}

    env.extend(f"{k}={v}" for k, v in custom.items())
    return env


def insecure_skip_tls_flag(bsl: BackupStorageLocation) -> str:
    """Return ``--insecure-tls`` when an AWS location disables TLS verification."""
    if backend_type(bsl.provider) != AWS_BACKEND:
        return ""
    if bsl.config.get("insecureSkipTLSVerify", "").lower() == "true":
        log.info("Enabling insecure TLS for restic commands against %s", bsl.name)
        return INSECURE_TLS_FLAG
    return ""


class ResticEnvironment:
    """Default implementation of the provider's environment collaborator."""

    def __init__(self, temp_dir: Path | None = None) -> None:
        self._temp_dir = temp_dir

    def temp_ca_cert_file(self, ca_cert: bytes, bsl_name: str) -> Path:
        return temp_ca_cert_file(ca_cert, bsl_name, self._temp_dir)

    def cmd_env(self, bsl: BackupStorageLocation, cred_store) -> list[str]:
        return cmd_env(bsl, cred_store)

    def insecure_skip_tls_flag(self, bsl: BackupStorageLocation) -> str:
        return insecure_skip_tls_flag(bsl)
