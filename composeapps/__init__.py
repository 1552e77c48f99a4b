"""Registry, dockerd, compose file, ostree apps tree and bootloader rollback helpers."""

__version__ = "0.1.0"