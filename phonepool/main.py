"""phonepool — main entry point.

Usage:
    python3 -m phonepool serve               Run the status service
    python3 -m phonepool status              Show the phone pool
    python3 -m phonepool claim ID            Claim a phone and mirror it until returned
    python3 -m phonepool view ID             Mirror a phone read-only
    python3 -m phonepool release ID          Return a phone
    python3 -m phonepool request ID          Ask the holder to return a phone
    python3 -m phonepool cancel ID           Withdraw a return request
    python3 -m phonepool force-release ID    Return someone else's phone (admins)
    python3 -m phonepool watch               Watch held phones for return requests
    python3 -m phonepool account             Show or update the local account
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import uvicorn

from phonepool import __version__
from phonepool.config import (
    ClientConfig,
    get_account,
    load_client_config,
    load_service_config,
    save_account,
    sync_account,
)
from phonepool.handoff import CountdownUpdated, Effect, Notify, PromptReturn
from phonepool.mirroring import ScrcpyLauncher
from phonepool.models import MirroringError, PoolError, ServiceUnavailableError
from phonepool.occupancy import OccupancyController
from phonepool.reconcile import ReconciliationLoop
from phonepool.registry import DeviceRegistry, StatusClient
from phonepool.service import create_app
from phonepool.session import ClientSession
from phonepool.views import build_views
from phonepool.waitlist import ReturnRequestQueue

logger = logging.getLogger("phonepool")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_config(args: argparse.Namespace) -> ClientConfig:
    return load_client_config(server_url=args.server)


def _status_client(config: ClientConfig) -> StatusClient:
    return StatusClient(config.server_url, timeout=config.request_timeout, api_key=config.api_key)


def _launcher(config: ClientConfig) -> ScrcpyLauncher:
    return ScrcpyLauncher(scrcpy_dir=config.scrcpy_dir, keys_dir=config.adb_keys_dir)


async def _connected_registry(client: StatusClient) -> DeviceRegistry:
    registry = DeviceRegistry(client)
    _, reachable = await registry.refresh()
    if not reachable:
        raise ServiceUnavailableError(
            f"Status service at {client.base_url} is unreachable", operation="list",
        )
    return registry


def _print_effect(effect: Effect) -> None:
    if isinstance(effect, PromptReturn):
        print(
            f"\n{effect.requester} asked you to return {effect.device_id}. "
            f"Press Enter within {effect.remaining}s to keep using it."
        )
    elif isinstance(effect, CountdownUpdated):
        if effect.remaining % 10 == 0 or effect.remaining <= 5:
            print(f"  {effect.remaining}s left")
    elif isinstance(effect, Notify):
        print(f"[{effect.kind}] {effect.message}")


def _start_ack_reader(reconciler: ReconciliationLoop) -> None:
    """Acknowledge the active hand-off whenever a line arrives on stdin."""
    loop = asyncio.get_running_loop()

    def on_line() -> None:
        if reconciler.session.awaiting_ack:
            asyncio.ensure_future(reconciler.acknowledge())
            print("Keeping the phone.")

    def reader() -> None:
        for _ in sys.stdin:
            loop.call_soon_threadsafe(on_line)

    threading.Thread(target=reader, name="ack-reader", daemon=True).start()


def _reconciler(
    config: ClientConfig,
    registry: DeviceRegistry,
    occupancy: OccupancyController,
    identity: str,
) -> ReconciliationLoop:
    return ReconciliationLoop(
        registry,
        occupancy,
        ClientSession(local_identity=identity),
        interval=config.poll_interval,
        handoff_seconds=config.handoff_seconds,
        on_effect=_print_effect,
    )


def _run(coro) -> None:
    """Run a command coroutine and map failures to exit codes."""
    try:
        code = asyncio.run(coro)
    except PoolError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)
    sys.exit(code or 0)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_serve(args: argparse.Namespace) -> None:
    """Run the status service in the foreground."""
    config = load_service_config(
        host=args.host,
        port=args.port,
        phones_file=Path(args.phones).expanduser() if args.phones else None,
        admin_hostnames=args.admin or None,
        api_key=args.api_key,
    )
    print(f"phonepool status service v{__version__}")
    print(f"  http://{config.host}:{config.port}")
    print(f"  Phones file: {config.phones_file}")
    if config.admin_hostnames:
        print(f"  Admins: {', '.join(config.admin_hostnames)}")
    print()

    app = create_app(config)
    uv_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level="debug" if args.verbose else "info",
    )
    server = uvicorn.Server(uv_config)
    try:
        server.run()
    except KeyboardInterrupt:
        pass


async def _status(args: argparse.Namespace) -> int:
    config = _client_config(args)
    identity = sync_account()["userName"]
    async with _status_client(config) as client:
        registry = await _connected_registry(client)
        devices = registry.devices

    if args.json:
        print(json.dumps([d.to_wire() for d in devices], indent=2))
        return 0

    print(f"{'ID':<12} {'NAME':<20} {'STATUS':<10} {'HOLDER':<24} WAITING")
    for view in build_views(devices, identity, datetime.now(timezone.utc)):
        holder = view.holder_name or "-"
        if view.is_mine:
            holder += " (you)"
        waiting = str(len(view.waiting))
        if view.queue_position is not None:
            waiting += f" (you are #{view.queue_position})"
        print(
            f"{view.device.id:<12} {view.device.name:<20} "
            f"{view.device.status.value:<10} {holder:<24} {waiting}"
        )
    return 0


async def _hold(reconciler: ReconciliationLoop, occupancy: OccupancyController, device_id: str) -> None:
    """Block while the local user still holds ``device_id``."""
    seen_held = False
    while True:
        session = occupancy.session_for(device_id)
        if session is not None and not session.running:
            await session.wait_closed()
            return
        if device_id in reconciler.session.held:
            seen_held = True
        elif seen_held:
            return
        await asyncio.sleep(0.5)


async def _claim(args: argparse.Namespace) -> int:
    config = _client_config(args)
    account = sync_account()
    identity = account["userName"]
    dept = args.dept if args.dept is not None else account.get("userDept", "")

    async with _status_client(config) as client:
        registry = await _connected_registry(client)
        occupancy = OccupancyController(registry, _launcher(config))
        try:
            await occupancy.claim(args.device_id, identity, dept)
        except MirroringError as e:
            print(f"Error: {e}", file=sys.stderr)
            print(f"{args.device_id} is still yours; run 'phonepool release {args.device_id}' when done.")
            return 1
        print(f"Claimed {args.device_id}. Close the mirroring window or press Ctrl-C to return it.")

        reconciler = _reconciler(config, registry, occupancy, identity)
        _start_ack_reader(reconciler)
        await reconciler.start()
        try:
            await _hold(reconciler, occupancy, args.device_id)
        except asyncio.CancelledError:
            print(f"\nReturning {args.device_id}...")
            await occupancy.release(args.device_id, identity)
            raise
        finally:
            await reconciler.stop()
            await occupancy.close()
    print(f"{args.device_id} returned.")
    return 0


async def _view(args: argparse.Namespace) -> int:
    config = _client_config(args)
    async with _status_client(config) as client:
        registry = await _connected_registry(client)
        occupancy = OccupancyController(registry, _launcher(config))
        session = await occupancy.view(args.device_id)
        print(f"Mirroring {args.device_id} read-only. Close the window to stop.")
        try:
            await session.wait_closed()
        finally:
            await occupancy.close()
    return 0


async def _release(args: argparse.Namespace) -> int:
    config = _client_config(args)
    identity = sync_account()["userName"]
    async with _status_client(config) as client:
        registry = await _connected_registry(client)
        await OccupancyController(registry).release(args.device_id, identity)
    print(f"{args.device_id} returned.")
    return 0


async def _request(args: argparse.Namespace) -> int:
    config = _client_config(args)
    identity = sync_account()["userName"]
    async with _status_client(config) as client:
        registry = await _connected_registry(client)
        await ReturnRequestQueue(registry).request_return(args.device_id, identity)
    print(f"You are on the waiting list for {args.device_id}.")
    return 0


async def _cancel(args: argparse.Namespace) -> int:
    config = _client_config(args)
    identity = sync_account()["userName"]
    async with _status_client(config) as client:
        registry = await _connected_registry(client)
        await ReturnRequestQueue(registry).cancel_request(args.device_id, identity)
    print(f"Removed from the waiting list for {args.device_id}.")
    return 0


async def _force_release(args: argparse.Namespace) -> int:
    config = _client_config(args)
    identity = sync_account()["userName"]
    async with _status_client(config) as client:
        registry = await _connected_registry(client)
        await OccupancyController(registry).force_release(args.device_id, identity)
    print(f"{args.device_id} force-released.")
    return 0


async def _watch(args: argparse.Namespace) -> int:
    config = _client_config(args)
    identity = sync_account()["userName"]
    async with _status_client(config) as client:
        registry = DeviceRegistry(client)
        occupancy = OccupancyController(registry)
        reconciler = _reconciler(config, registry, occupancy, identity)
        _start_ack_reader(reconciler)
        print(f"Watching phones held by {identity}. Ctrl-C to stop.")
        await reconciler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await reconciler.stop()
    return 0


def _cmd_account(args: argparse.Namespace) -> None:
    """Show the local account, optionally updating the department."""
    account = sync_account()
    if args.dept is not None:
        save_account(account["userName"], args.dept)
        account = get_account() or account
    print(f"User:       {account['userName']}")
    print(f"Department: {account.get('userDept') or '-'}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def cli() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="phonepool — check out, mirror and hand off shared test phones",
    )
    parser.add_argument("--server", default=None, help="Status service URL")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the status service")
    serve_parser.add_argument("--host", default=None, help="Bind host (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default: 7003)")
    serve_parser.add_argument("--phones", default=None, help="Phones JSON file")
    serve_parser.add_argument(
        "--admin", action="append", default=None, metavar="HOSTNAME",
        help="Host allowed to force-release phones (repeatable)",
    )
    serve_parser.add_argument("--api-key", default=None, help="Require this API key")

    status_parser = subparsers.add_parser("status", help="Show the phone pool")
    status_parser.add_argument("--json", action="store_true", help="Print raw JSON")

    claim_parser = subparsers.add_parser("claim", help="Claim and mirror a phone")
    claim_parser.add_argument("device_id")
    claim_parser.add_argument("--dept", default=None, help="Department to record")

    for name, help_text in (
        ("view", "Mirror a phone read-only"),
        ("release", "Return a phone"),
        ("request", "Ask the holder to return a phone"),
        ("cancel", "Withdraw your return request"),
        ("force-release", "Return someone else's phone (admins only)"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("device_id")

    subparsers.add_parser("watch", help="Watch held phones for return requests")

    account_parser = subparsers.add_parser("account", help="Show or update the local account")
    account_parser.add_argument("--dept", default=None, help="Set the department")

    args = parser.parse_args()

    if args.verbose:
        level = logging.DEBUG
    elif args.command in ("serve", "claim", "watch"):
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "serve":
        _cmd_serve(args)
    elif args.command == "account":
        _cmd_account(args)
    elif args.command == "status":
        _run(_status(args))
    elif args.command == "claim":
        _run(_claim(args))
    elif args.command == "view":
        _run(_view(args))
    elif args.command == "release":
        _run(_release(args))
    elif args.command == "request":
        _run(_request(args))
    elif args.command == "cancel":
        _run(_cancel(args))
    elif args.command == "force-release":
        _run(_force_release(args))
    elif args.command == "watch":
        _run(_watch(args))


if __name__ == "__main__":
    cli()
