"""Client and service configuration, plus the local account store."""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path


logger = logging.getLogger("phonepool.config")

CONFIG_DIR = Path.home() / ".phonepool"
USER_CONFIG_FILE = CONFIG_DIR / "config.json"
PHONES_FILE = CONFIG_DIR / "phones.json"

DEFAULT_SERVER_URL = "http://127.0.0.1:7003"
DEFAULT_SERVICE_PORT = 7003
POLL_INTERVAL = 3.0  # seconds between snapshot polls
HANDOFF_SECONDS = 60  # acknowledgment window for a return request
REQUEST_EXPIRY = timedelta(minutes=10)


@dataclass
class ClientConfig:
    """Configuration for a phonepool client instance."""

    server_url: str = DEFAULT_SERVER_URL
    poll_interval: float = POLL_INTERVAL
    request_timeout: float = 1.5
    handoff_seconds: int = HANDOFF_SECONDS
    api_key: str = field(default="", repr=False)
    scrcpy_dir: Path | None = None
    adb_keys_dir: Path | None = None

    def __post_init__(self) -> None:
        self.server_url = self.server_url.rstrip("/")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.handoff_seconds <= 0:
            raise ValueError("handoff_seconds must be positive")


@dataclass
class ServiceConfig:
    """Configuration for the reference status service."""

    host: str = "0.0.0.0"
    port: int = DEFAULT_SERVICE_PORT
    phones_file: Path = PHONES_FILE
    admin_hostnames: list[str] = field(default_factory=list)
    api_key: str = field(default="", repr=False)
    request_expiry: timedelta = REQUEST_EXPIRY


def read_user_config() -> dict:
    """Read user config from ~/.phonepool/config.json. Returns {} if missing or invalid."""
    if not USER_CONFIG_FILE.exists():
        return {}
    try:
        return json.loads(USER_CONFIG_FILE.read_text())
    except Exception as e:
        logger.warning("Failed to read config file %s: %s", USER_CONFIG_FILE, e)
        return {}


def _write_user_config(config: dict) -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    USER_CONFIG_FILE.write_text(json.dumps(config, indent=2) + "\n")


def load_client_config(**overrides) -> ClientConfig:
    """Build a ClientConfig from config.json, with explicit overrides on top.

    Overrides whose value is None are ignored so CLI flags can be passed
    straight through.
    """
    user = read_user_config()
    values: dict = {}
    if "server_url" in user:
        values["server_url"] = str(user["server_url"])
    if "poll_interval" in user:
        values["poll_interval"] = float(user["poll_interval"])
    if "request_timeout" in user:
        values["request_timeout"] = float(user["request_timeout"])
    if "api_key" in user:
        values["api_key"] = str(user["api_key"])
    if user.get("scrcpy_dir"):
        values["scrcpy_dir"] = Path(user["scrcpy_dir"]).expanduser()
    if user.get("adb_keys_dir"):
        values["adb_keys_dir"] = Path(user["adb_keys_dir"]).expanduser()
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ClientConfig(**values)


def load_service_config(**overrides) -> ServiceConfig:
    """Build a ServiceConfig from the ``service`` block of config.json."""
    user = read_user_config().get("service", {})
    values: dict = {}
    if "port" in user:
        values["port"] = int(user["port"])
    if user.get("phones_file"):
        values["phones_file"] = Path(user["phones_file"]).expanduser()
    if "admin_hostnames" in user:
        values["admin_hostnames"] = [str(h) for h in user["admin_hostnames"] if h]
    if "api_key" in user:
        values["api_key"] = str(user["api_key"])
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ServiceConfig(**values)


def resolve_local_identity() -> str:
    """Return the identity this machine operates under (its host name)."""
    return socket.gethostname()


def get_account() -> dict | None:
    """Return the saved account ({"userName", "userDept"}) or None."""
    account = read_user_config().get("account")
    if isinstance(account, dict) and account.get("userName"):
        return account
    return None


def save_account(user_name: str, user_dept: str = "") -> None:
    """Persist the account identity and department in ~/.phonepool/config.json."""
    config = read_user_config()
    config["account"] = {"userName": user_name, "userDept": user_dept}
    _write_user_config(config)


def sync_account() -> dict:
    """Make the saved account match this machine's identity.

    The identity always follows the host name; a previously saved
    department is kept.
    """
    identity = resolve_local_identity()
    existing = get_account() or {}
    dept = existing.get("userDept", "")
    if existing.get("userName") != identity:
        save_account(identity, dept)
        logger.info("Account synced to host identity %s", identity)
    return {"userName": identity, "userDept": dept}
