"""HTTP client for the administrative mic backend."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from micseat.shared.errors import AdminCallFailure
from micseat.shared.protocol import (
    ADMIN_CONTROL_PATH,
    ROOM_INFO_PATH,
    AdminAction,
    AdminControlRequest,
    AdminControlResult,
    RoomInfo,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class AdminActionGateway:
    """Issues approve/kick/mute calls that update attributes and grants together.

    Every call sets an absolute state (``mic_status``/``can_publish`` to X), so
    retrying with the same target cannot double-apply. A failed call raises
    ``AdminCallFailure`` and leaves local state untouched: the outcome is only
    observed through attribute replication.
    """

    def __init__(
        self,
        base_url: str,
        *,
        bearer_token: Optional[str] = None,
        cookies: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._client.headers.update(headers)
        if cookies:
            self._client.cookies.update(cookies)

    async def approve_mic(self, room_id: str, target_identity: str, operator_identity: str) -> AdminControlResult:
        return await self._control(room_id, target_identity, operator_identity, AdminAction.APPROVE_MIC)

    async def kick_from_mic(self, room_id: str, target_identity: str, operator_identity: str) -> AdminControlResult:
        return await self._control(room_id, target_identity, operator_identity, AdminAction.KICK_FROM_MIC)

    async def mute_mic(self, room_id: str, target_identity: str, operator_identity: str) -> AdminControlResult:
        return await self._control(room_id, target_identity, operator_identity, AdminAction.MUTE_MIC)

    async def unmute_mic(self, room_id: str, target_identity: str, operator_identity: str) -> AdminControlResult:
        return await self._control(room_id, target_identity, operator_identity, AdminAction.UNMUTE_MIC)

    async def fetch_room_info(self, room_id: str) -> RoomInfo:
        data = await self._request("GET", ROOM_INFO_PATH, params={"room_id": room_id})
        if not data.get("success"):
            raise AdminCallFailure(str(data.get("error") or "room info unavailable"))
        payload = data.get("data")
        if not isinstance(payload, dict):
            raise AdminCallFailure("room info response missing data")
        try:
            return RoomInfo.from_dict(payload)
        except (TypeError, ValueError) as exc:
            raise AdminCallFailure("malformed room info") from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _control(
        self,
        room_id: str,
        target_identity: str,
        operator_identity: str,
        action: AdminAction,
    ) -> AdminControlResult:
        request = AdminControlRequest(
            room_name=room_id,
            target_identity=target_identity,
            operator_identity=operator_identity,
            action=action,
        )
        logger.info(
            "Admin call %s target=%s operator=%s room=%s",
            action.value,
            target_identity,
            operator_identity,
            room_id,
        )
        data = await self._request("POST", ADMIN_CONTROL_PATH, json=request.to_dict())
        result = AdminControlResult.from_dict(data)
        if not result.success:
            logger.warning("Admin call %s for %s rejected: %s", action.value, target_identity, result.error)
            raise AdminCallFailure(result.error or result.code or "request rejected", code=result.code)
        return result

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise AdminCallFailure("timeout") from exc
        except httpx.HTTPError as exc:
            raise AdminCallFailure(str(exc) or exc.__class__.__name__) from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_error:
            reason = f"http_{response.status_code}"
            if isinstance(data, dict) and (data.get("error") or data.get("detail")):
                reason = str(data.get("error") or data.get("detail"))
            raise AdminCallFailure(reason, status_code=response.status_code)
        if not isinstance(data, dict):
            raise AdminCallFailure("malformed response", status_code=response.status_code)
        return data
