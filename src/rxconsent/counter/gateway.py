"""How the counter client reaches the access service.

``LocalAccessGateway`` calls an in-process ``AccessService``;
``HttpAccessGateway`` talks to the HTTP surface and turns error payloads
back into the typed errors the controller reacts to.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from rxconsent.errors import GatewayUnavailable, InvalidOtp, error_from_code

if TYPE_CHECKING:
    from rxconsent.access.service import AccessService

__all__ = [
    "RequestTicket",
    "StatusReply",
    "AccessGateway",
    "LocalAccessGateway",
    "HttpAccessGateway",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestTicket:
    request_id: str
    expires_at: datetime


@dataclass(frozen=True)
class StatusReply:
    state: str
    granted: bool
    access_token: str = ""


class AccessGateway(Protocol):
    async def request_access(self, patient_prn: str) -> RequestTicket:
        ...

    async def check_status(self, request_id: str) -> StatusReply:
        ...

    async def verify_otp(self, request_id: str, otp: str) -> str:
        """Returns the access token."""
        ...

    async def fetch_prescription(self, patient_prn: str, access_token: str) -> dict[str, Any]:
        ...

    async def release(self, access_token: str) -> None:
        ...


class LocalAccessGateway:
    """Kiosk mode: the counter and the service share a process."""

    def __init__(self, service: AccessService) -> None:
        self._service = service

    async def request_access(self, patient_prn: str) -> RequestTicket:
        request = self._service.request_access(patient_prn)
        return RequestTicket(request_id=request.request_id, expires_at=request.expires_at)

    async def check_status(self, request_id: str) -> StatusReply:
        result = self._service.check_status(request_id)
        return StatusReply(
            state=result.state.value,
            granted=result.granted,
            access_token=result.access_token.token if result.access_token else "",
        )

    async def verify_otp(self, request_id: str, otp: str) -> str:
        return self._service.verify_otp(request_id, otp).token

    async def fetch_prescription(self, patient_prn: str, access_token: str) -> dict[str, Any]:
        return self._service.fetch_prescription(patient_prn, access_token).to_dict()

    async def release(self, access_token: str) -> None:
        self._service.release(access_token)


class HttpAccessGateway:
    """Counter client over HTTP. The token travels per call, never in global state."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @classmethod
    def from_url(cls, base_url: str, *, timeout: float = 10.0) -> HttpAccessGateway:
        return cls(httpx.AsyncClient(base_url=base_url, timeout=timeout))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("Access service unreachable: %s %s (%s)", method, url, exc)
            raise GatewayUnavailable(str(exc) or None) from exc
        if resp.status_code >= 400:
            raise self._error(resp)
        return resp

    @staticmethod
    def _error(resp: httpx.Response) -> Exception:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        code = body.get("error_code", "") if isinstance(body, dict) else ""
        message = body.get("message") if isinstance(body, dict) else None
        if code == InvalidOtp.error_code:
            details = body.get("details") or {}
            return InvalidOtp(message, attempts_left=details.get("attempts_left"))
        if resp.status_code >= 500 and not code:
            return GatewayUnavailable(f"HTTP {resp.status_code}")
        return error_from_code(code, message)

    @staticmethod
    def _auth(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def request_access(self, patient_prn: str) -> RequestTicket:
        resp = await self._send("POST", "/access/request", json={"patient_prn": patient_prn})
        data = resp.json()
        return RequestTicket(
            request_id=data["request_id"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )

    async def check_status(self, request_id: str) -> StatusReply:
        resp = await self._send("GET", f"/access/check-status/{request_id}")
        data = resp.json()
        return StatusReply(
            state=data["state"],
            granted=data["granted"],
            access_token=data.get("access_token") or "",
        )

    async def verify_otp(self, request_id: str, otp: str) -> str:
        resp = await self._send(
            "POST", "/access/verify-otp", json={"request_id": request_id, "otp": otp}
        )
        return resp.json()["access_token"]  # type: ignore[no-any-return]

    async def fetch_prescription(self, patient_prn: str, access_token: str) -> dict[str, Any]:
        resp = await self._send(
            "GET", f"/prescriptions/latest/{patient_prn}", headers=self._auth(access_token)
        )
        return resp.json()  # type: ignore[no-any-return]

    async def release(self, access_token: str) -> None:
        await self._send("POST", "/access/release", headers=self._auth(access_token))
