"""Central registry for uploader providers."""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


@dataclass
class ProviderEntry:
    """Metadata about a registered provider."""

    family: str  # "uploader"
    name: str  # "restic"
    cls: type | str  # class, or "package.module:ClassName" imported on first use
    extras: list[str] = field(default_factory=list)  # pip extras needed

    def load(self) -> type:
        """Return the provider class, importing it if registered by path."""
        if isinstance(self.cls, str):
            module_name, _, attr = self.cls.partition(":")
            self.cls = getattr(importlib.import_module(module_name), attr)
        return self.cls


class ProviderRegistry:
    """Central registry for all provider types."""

    def __init__(self) -> None:
        self._providers: dict[str, dict[str, ProviderEntry]] = {}

    def register(
        self,
        family: str,
        name: str,
        cls: type | str,
        extras: list[str] | None = None,
    ) -> None:
        """Register a provider class (or its import path) under a family."""
        self._providers.setdefault(family, {})[name] = ProviderEntry(
            family=family, name=name, cls=cls, extras=extras or []
        )
        log.debug("Registered provider: %s/%s", family, name)

    def get(self, family: str, name: str, **kwargs) -> object:
        """Instantiate a provider by family and name, passing kwargs to it."""
        return self.get_entry(family, name).load()(**kwargs)

    def get_entry(self, family: str, name: str) -> ProviderEntry:
        """Get a ProviderEntry without instantiating."""
        fam = self._providers.get(family)
        if fam is None:
            raise KeyError(f"Unknown provider family: {family!r}")
        entry = fam.get(name)
        if entry is None:
            raise KeyError(f"Unknown provider: {family}/{name!r}")
        return entry

    def list_family(self, family: str) -> list[ProviderEntry]:
        """List all providers in a family."""
        return list(self._providers.get(family, {}).values())

    def families(self) -> list[str]:
        """List all registered family names."""
        return list(self._providers.keys())


# Global singleton
registry = ProviderRegistry()
registry.register(
    "uploader", "restic", "resticprov.providers.uploader.restic:ResticUploaderProvider",
)
