"""Materialize keyring secrets as owner-only files for the restic CLI."""

from __future__ import annotations

import logging
from pathlib import Path

from resticprov.core.errors import CredentialProvisionError
from resticprov.core.fileutil import ensure_dir, write_temp_file
from resticprov.core.models import SecretKeySelector

log = logging.getLogger(__name__)


def _get_secret(service: str, key: str) -> str | None:
    """Retrieve a secret from the system keyring."""
    import keyring

    return keyring.get_password(service, key)


class CredentialFileStore:
    """Writes secrets referenced by a SecretKeySelector to files on disk.

    restic reads the repository password from ``--password-file`` and the
    cloud SDKs read credentials from files too, so secrets have to exist on
    disk for the duration of a command. Every call writes a new file named
    ``<name>-<key>-<random>`` inside ``directory``, readable by the owner only;
    the caller owns that file and removes it when done.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory).expanduser()

    @property
    def directory(self) -> Path:
        return self._directory

    def path(self, selector: SecretKeySelector | None) -> Path:
        """Return the path of a file holding the secret's value.

        Raises:
            CredentialProvisionError: If the selector is empty, the secret is
                missing, or the keyring or file system fails.
        """
        if selector is None or not selector.name or not selector.key:
            raise CredentialProvisionError("secret key selector is empty")

        try:
            value = _get_secret(selector.name, selector.key)
        except Exception as e:
            raise CredentialProvisionError(
                f"error reading secret {selector.name}/{selector.key} from keyring: {e}"
            ) from e
        if value is None:
            raise CredentialProvisionError(
                f"secret {selector.name}/{selector.key} not found in keyring"
            )

        try:
            target = write_temp_file(
                value.encode("utf-8"),
                prefix=f"{selector.name}-{selector.key}-",
                directory=ensure_dir(self._directory),
            )
        except OSError as e:
            raise CredentialProvisionError(
                f"error writing secret {selector.name}/{selector.key} to {self._directory}: {e}"
            ) from e

        log.debug("Wrote secret %s/%s to %s", selector.name, selector.key, target)
        return target
