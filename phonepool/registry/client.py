"""StatusClient — HTTP client for the phone status service.

Every call maps transport failures and undecodable responses to
ServiceUnavailableError so callers only have to distinguish "the service
said no" from "the service could not be asked".
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError

from phonepool.models import (
    AdminCheckResponse,
    Device,
    DeviceNotFoundError,
    PhoneListResponse,
    ServiceUnavailableError,
    SuccessResponse,
)

logger = logging.getLogger("phonepool.status-client")

DEFAULT_TIMEOUT = 1.5  # seconds, matches the poll abort of the desktop launcher


class StatusClient:
    """Speaks the status service's REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"X-API-Key": api_key} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> StatusClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        path: str,
        operation: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise ServiceUnavailableError(
                f"Network error during {operation}: {e}", operation=operation,
            ) from e

        if response.status_code == 404:
            detail = _error_detail(response)
            raise DeviceNotFoundError(detail or f"{path} not found", operation=operation)
        if response.status_code >= 400:
            raise ServiceUnavailableError(
                f"{operation} failed: HTTP {response.status_code} {_error_detail(response)}".rstrip(),
                operation=operation,
            )

        try:
            data = response.json() if response.content else {}
        except ValueError as e:
            raise ServiceUnavailableError(
                f"Failed to parse {operation} response: {e}", operation=operation,
            ) from e
        if not isinstance(data, dict):
            raise ServiceUnavailableError(
                f"Unexpected {operation} response: {data!r}", operation=operation,
            )
        return data

    def _success(self, data: dict[str, Any], operation: str) -> SuccessResponse:
        try:
            return SuccessResponse.model_validate(data)
        except ValidationError as e:
            raise ServiceUnavailableError(
                f"Malformed {operation} response: {e}", operation=operation,
            ) from e

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    async def list_phones(self) -> list[Device]:
        """GET /phones."""
        data = await self._call("GET", "/phones", "list")
        try:
            return PhoneListResponse.model_validate(data).phones
        except ValidationError as e:
            raise ServiceUnavailableError(f"Malformed phone list: {e}", operation="list") from e

    async def occupy(self, phone_id: str, user_name: str, user_dept: str = "") -> bool:
        """POST /occupy. Returns False when the service refused the claim."""
        data = await self._call(
            "POST", "/occupy", "claim",
            json={"phoneId": phone_id, "userName": user_name, "userDept": user_dept},
        )
        return self._success(data, "claim").success

    async def release(
        self,
        phone_id: str,
        user_name: str | None,
        user_dept: str | None,
        start_time: datetime | None,
    ) -> bool:
        """POST /release with the holder's recorded session details."""
        data = await self._call(
            "POST", "/release", "release",
            json={
                "phoneId": phone_id,
                "userName": user_name,
                "userDept": user_dept,
                "startTime": start_time.isoformat() if start_time else None,
            },
        )
        return self._success(data, "release").success

    async def request_return(self, phone_id: str, user_name: str) -> bool:
        """POST /request. Returns False when the requester is already queued."""
        data = await self._call(
            "POST", "/request", "request",
            json={"phoneId": phone_id, "userName": user_name},
        )
        return self._success(data, "request").success

    async def cancel_request(self, phone_id: str, user_name: str) -> bool:
        """POST /cancel-request."""
        data = await self._call(
            "POST", "/cancel-request", "cancel",
            json={"phoneId": phone_id, "userName": user_name},
        )
        return self._success(data, "cancel").success

    async def force_release(self, phone_id: str, admin_hostname: str) -> SuccessResponse:
        """POST /force-release. The response carries the refusal reason, if any."""
        data = await self._call(
            "POST", "/force-release", "force-release",
            json={"phoneId": phone_id, "adminHostname": admin_hostname},
        )
        return self._success(data, "force-release")

    async def check_admin(self, hostname: str) -> bool:
        """GET /check-admin?hostname=..."""
        data = await self._call(
            "GET", "/check-admin", "check-admin", params={"hostname": hostname},
        )
        try:
            return AdminCheckResponse.model_validate(data).is_admin
        except ValidationError as e:
            raise ServiceUnavailableError(
                f"Malformed admin check response: {e}", operation="check-admin",
            ) from e


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or "")
    return ""
