"""Reference implementation of the phone status service."""

from __future__ import annotations

from phonepool.service.app import create_app
from phonepool.service.store import PhoneStore

__all__ = ["PhoneStore", "create_app"]
