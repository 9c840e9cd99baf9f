"""resticprov — restic uploader provider for volume backup and restore."""

__version__ = "0.1.0"
