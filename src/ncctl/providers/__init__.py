"""Provider interfaces for ncctl."""
from __future__ import annotations

from .remote import RemoteObject, RemoteStorage, RemoteStorageError
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "RemoteObject",
    "RemoteStorage",
    "RemoteStorageError",
    "SystemdError",
    "SystemdProvider",
]
