"""Shared fixtures: an in-process status service and fake mirroring."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport

from phonepool.config import ServiceConfig
from phonepool.mirroring import BaseMirrorLauncher, MirrorSession
from phonepool.models import Device, MirroringError
from phonepool.registry import DeviceRegistry, StatusClient
from phonepool.service import PhoneStore, create_app


class FakeClock:
    """Settable clock for the phone store."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProcess:
    """Minimal asyncio subprocess stand-in."""

    def __init__(self):
        self.returncode = None
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def exit(self, code=0):
        self.returncode = code
        self._exited.set()

    def terminate(self):
        self.terminated = True
        self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)


class FakeLauncher(BaseMirrorLauncher):
    """Launcher that records sessions instead of spawning scrcpy."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sessions: list[MirrorSession] = []
        self.processes: list[FakeProcess] = []

    async def start(self, address, device_id, readonly=False):
        if self.fail:
            raise MirroringError("scrcpy not found", operation="mirror")
        proc = FakeProcess()
        session = MirrorSession(device_id, address, proc, readonly=readonly)
        self.processes.append(proc)
        self.sessions.append(session)
        return session


def sample_phones() -> list[Device]:
    return [
        Device(id="D1", name="Galaxy S23", address="10.0.0.11"),
        Device(id="D2", name="Pixel 8", address="10.0.0.12"),
    ]


@pytest.fixture
def store():
    """Phone store on real time with one admin host."""
    return PhoneStore(sample_phones(), admin_hostnames=["admin-pc"])


@pytest.fixture
def app(store):
    return create_app(ServiceConfig(), store=store)


@pytest.fixture
async def status_client(app):
    client = StatusClient("http://test", transport=ASGITransport(app=app))
    yield client
    await client.close()


@pytest.fixture
async def registry(status_client):
    """Registry primed with one successful refresh."""
    registry = DeviceRegistry(status_client)
    await registry.refresh()
    return registry


@pytest.fixture
def launcher():
    return FakeLauncher()
