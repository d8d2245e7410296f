"""Device registry: the status service client and the local snapshot cache."""

from __future__ import annotations

from phonepool.registry.cache import DeviceRegistry
from phonepool.registry.client import StatusClient

__all__ = ["DeviceRegistry", "StatusClient"]
