"""Screen mirroring sessions via scrcpy over adb.

A session wraps one scrcpy process. When the user closes the mirroring
window the process exits on its own and the session fires its closed
callbacks exactly once; a session stopped through ``stop()`` never fires
them, so a local release cannot loop back into another release.

Dependencies:
    - scrcpy and adb, either on PATH or in a configured directory
    - phones reachable over adb-over-TCP (port 5555 unless given)
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import platform
import shutil
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

from phonepool.models import MirroringError

logger = logging.getLogger("phonepool.mirroring")

ADB_PORT = 5555
STOP_TIMEOUT = 5.0

ClosedCallback = Callable[["MirrorSession"], Coroutine[Any, Any, None]]
CleanupHook = Callable[[str], Coroutine[Any, Any, None]]


def normalize_address(address: str) -> str:
    """Append the default adb port unless one is given."""
    address = address.strip()
    if not address:
        return ""
    return address if ":" in address else f"{address}:{ADB_PORT}"


class MirrorSession:
    """A running mirroring process for one device."""

    def __init__(
        self,
        device_id: str,
        address: str,
        process: asyncio.subprocess.Process,
        readonly: bool = False,
        cleanup: CleanupHook | None = None,
    ) -> None:
        self.device_id = device_id
        self.address = address
        self.readonly = readonly
        self._process = process
        self._cleanup = cleanup
        self._callbacks: list[ClosedCallback] = []
        self._stopping = False
        self._closed = asyncio.Event()
        self._watch_task = asyncio.create_task(self._watch())

    @property
    def running(self) -> bool:
        return not self._closed.is_set()

    def add_closed_callback(self, callback: ClosedCallback) -> None:
        self._callbacks.append(callback)

    async def wait_closed(self) -> None:
        """Wait for the process to exit and its closed callbacks to finish."""
        await asyncio.shield(self._watch_task)

    async def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        """Terminate the process without firing closed callbacks."""
        self._stopping = True
        if self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                self._process.kill()
        await self._watch_task

    async def _watch(self) -> None:
        returncode = await self._process.wait()
        logger.info(
            "Mirroring for %s (%s) exited with code %s", self.device_id, self.address, returncode,
        )
        if self._cleanup is not None:
            try:
                await self._cleanup(self.address)
            except Exception as e:
                logger.warning("Mirroring cleanup for %s failed: %s", self.address, e)
        self._closed.set()

        if self._stopping:
            return
        for callback in self._callbacks:
            try:
                await callback(self)
            except Exception:
                logger.exception("Closed callback for %s failed", self.device_id)


class BaseMirrorLauncher(abc.ABC):
    """Starts mirroring sessions."""

    @abc.abstractmethod
    async def start(self, address: str, device_id: str, readonly: bool = False) -> MirrorSession:
        """Start mirroring ``address``.

        Raises MirroringError if the session could not be started.
        """
        ...


class ScrcpyLauncher(BaseMirrorLauncher):
    """Connects adb and spawns scrcpy for a phone."""

    def __init__(
        self,
        scrcpy_dir: Path | None = None,
        keys_dir: Path | None = None,
        title_prefix: str = "phonepool",
    ) -> None:
        self.scrcpy_dir = scrcpy_dir
        self.keys_dir = keys_dir
        self.title_prefix = title_prefix

    def _binary(self, name: str) -> str:
        if platform.system() == "Windows":
            name += ".exe"
        if self.scrcpy_dir is not None:
            return str(self.scrcpy_dir / name)
        return shutil.which(name) or name

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.keys_dir is not None:
            env["ADB_VENDOR_KEYS"] = str(self.keys_dir)
        return env

    async def _adb(self, *args: str) -> tuple[int, str]:
        """Run an adb command and return (returncode, combined output)."""
        proc = await asyncio.create_subprocess_exec(
            self._binary("adb"), *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=self._env(),
        )
        stdout, _ = await proc.communicate()
        return proc.returncode, stdout.decode(errors="replace").strip()

    async def _disconnect(self, address: str) -> None:
        returncode, output = await self._adb("disconnect", address)
        if returncode != 0:
            logger.warning("adb disconnect %s: %s", address, output)
        else:
            logger.info("adb disconnected %s", address)

    async def start(self, address: str, device_id: str, readonly: bool = False) -> MirrorSession:
        target = normalize_address(address)
        if not target:
            raise MirroringError(f"Device {device_id} has no network address", operation="mirror")

        logger.info("Connecting adb to %s", target)
        try:
            returncode, output = await self._adb("connect", target)
        except FileNotFoundError as e:
            raise MirroringError(f"adb not found: {e}", operation="mirror") from e
        lowered = output.lower()
        if "already connected" not in lowered and (
            returncode != 0 or "failed" in lowered or "unable" in lowered
        ):
            raise MirroringError(f"adb connect {target} failed: {output}", operation="mirror")

        cmd = [
            self._binary("scrcpy"),
            "-s", target,
            "--window-title", f"{self.title_prefix} - {device_id}",
            "--no-audio",
            "--always-on-top",
        ]
        if readonly:
            cmd.append("--no-control")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=str(self.scrcpy_dir) if self.scrcpy_dir is not None else None,
                env=self._env(),
            )
        except (FileNotFoundError, PermissionError) as e:
            raise MirroringError(f"Failed to start scrcpy: {e}", operation="mirror") from e

        logger.info("Mirroring started for %s (%s, readonly=%s)", device_id, target, readonly)
        return MirrorSession(device_id, target, process, readonly=readonly, cleanup=self._disconnect)
