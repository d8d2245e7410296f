"""Tests for the phonepool CLI commands."""

from __future__ import annotations

import argparse
import sys

import pytest
from httpx import ASGITransport

from phonepool import config as config_module
from phonepool import main
from phonepool.models import DeviceNotFoundError, NotAuthorizedError
from phonepool.registry import StatusClient


@pytest.fixture(autouse=True)
def local_host(tmp_path, monkeypatch):
    """Isolated config directory and a fixed host name."""
    config_dir = tmp_path / ".phonepool"
    monkeypatch.setattr(config_module, "CONFIG_DIR", config_dir)
    monkeypatch.setattr(config_module, "USER_CONFIG_FILE", config_dir / "config.json")
    monkeypatch.setattr(config_module.socket, "gethostname", lambda: "DESKTOP-ALICE")


@pytest.fixture
def in_process(app, monkeypatch):
    """Route CLI traffic to the in-process status service."""
    monkeypatch.setattr(
        main, "_status_client",
        lambda config: StatusClient("http://test", transport=ASGITransport(app=app)),
    )


def _args(**kwargs) -> argparse.Namespace:
    kwargs.setdefault("server", None)
    return argparse.Namespace(**kwargs)


class TestCommands:
    async def test_status_table(self, in_process, store, capsys):
        await store.occupy("D1", "DESKTOP-ALICE")
        await store.request("D2", "DESKTOP-ALICE")

        assert await main._status(_args(json=False)) == 0

        out = capsys.readouterr().out
        assert "DESKTOP-ALICE (you)" in out
        assert "(you are #1)" in out

    async def test_status_json(self, in_process, capsys):
        await main._status(_args(json=True))
        out = capsys.readouterr().out
        assert '"id": "D1"' in out

    async def test_request_and_cancel(self, in_process, store):
        await store.occupy("D1", "DESKTOP-BOB")

        await main._request(_args(device_id="D1"))
        assert [r.requester for r in store.get("D1").requests] == ["DESKTOP-ALICE"]

        await main._cancel(_args(device_id="D1"))
        assert store.get("D1").requests == []

    async def test_release(self, in_process, store):
        await store.occupy("D1", "DESKTOP-ALICE")
        await main._release(_args(device_id="D1"))
        assert store.get("D1").holder is None

    async def test_release_of_someone_elses_device_is_refused(self, in_process, store):
        await store.occupy("D1", "DESKTOP-BOB")
        with pytest.raises(NotAuthorizedError):
            await main._release(_args(device_id="D1"))
        assert store.get("D1").holder.user_name == "DESKTOP-BOB"
        assert store.get("D1").access_logs == []

    async def test_force_release_requires_admin(self, in_process, store):
        await store.occupy("D1", "DESKTOP-BOB")
        with pytest.raises(NotAuthorizedError):
            await main._force_release(_args(device_id="D1"))
        assert store.get("D1").holder.user_name == "DESKTOP-BOB"

    async def test_unknown_device(self, in_process):
        with pytest.raises(DeviceNotFoundError):
            await main._request(_args(device_id="NOPE"))


class TestEntryPoint:
    def test_account_sets_department(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["phonepool", "account", "--dept", "qa"])
        main.cli()

        out = capsys.readouterr().out
        assert "DESKTOP-ALICE" in out
        assert "qa" in out
        assert config_module.get_account() == {"userName": "DESKTOP-ALICE", "userDept": "qa"}

    def test_pool_error_exits_1(self, capsys):
        async def failing():
            raise DeviceNotFoundError("Phone X not found")

        with pytest.raises(SystemExit) as exc_info:
            main._run(failing())
        assert exc_info.value.code == 1
        assert "Phone X not found" in capsys.readouterr().err

    def test_success_exits_0(self):
        async def ok():
            return 0

        with pytest.raises(SystemExit) as exc_info:
            main._run(ok())
        assert exc_info.value.code == 0

    def test_command_required(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["phonepool"])
        with pytest.raises(SystemExit):
            main.cli()
