"""
HTTP Session Relay - client for the rendezvous server

CRUD goes over HTTP (httpx); realtime updates come from the server's
WebSocket stream (websockets). The stream is best effort: if it cannot be
opened or drops, the negotiator's polling keeps working.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
import websockets

from medsync.errors import ErrorType, RelayError, SessionAlreadyAnsweredError, SessionNotFoundError
from medsync.relay.base import SessionCallback, SessionRelay, Subscription
from medsync.relay.models import SessionStatus, SyncSession

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/sync"


class HttpSessionRelay(SessionRelay):
    """Relay client talking to medsync.relay.app over HTTP + WebSocket"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._stream_tasks: Dict[int, asyncio.Task] = {}

    # ===== HTTP helpers =====

    async def _request(self, method: str, path: str, key: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, f"{API_PREFIX}{path}", **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Relay {method} {path} failed: {e}")
            raise RelayError(f"Relay unreachable: {e}") from e

        if response.status_code == 404:
            raise SessionNotFoundError(key)
        if response.status_code == 409 and method == "PATCH":
            raise SessionAlreadyAnsweredError(key)
        if response.status_code == 409:
            raise RelayError(
                "Pairing code already in use",
                error_type=ErrorType.PAIRING_CODE_IN_USE,
                details={"code": key},
            )
        if response.is_error:
            raise RelayError(
                f"Relay returned HTTP {response.status_code}",
                details={"path": path, "body": response.text[:200]},
            )
        return response

    @staticmethod
    def _session(response: httpx.Response) -> SyncSession:
        try:
            return SyncSession.model_validate(response.json())
        except ValueError as e:
            raise RelayError(f"Malformed session from relay: {e}") from e

    # ===== SessionRelay =====

    async def create_session(self, pairing_code: str, offer: Dict[str, Any]) -> SyncSession:
        response = await self._request(
            "POST", "/sessions", pairing_code,
            json={"pairing_code": pairing_code, "offer": offer},
        )
        return self._session(response)

    async def find_session_by_code(self, pairing_code: str) -> SyncSession:
        response = await self._request("GET", f"/sessions/by-code/{pairing_code}", pairing_code)
        return self._session(response)

    async def get_session(self, session_id: str) -> SyncSession:
        response = await self._request("GET", f"/sessions/{session_id}", session_id)
        return self._session(response)

    async def update_session(
        self,
        session_id: str,
        answer: Optional[Dict[str, Any]] = None,
        status: Optional[SessionStatus] = None,
        ice_candidates: Optional[List[Dict[str, Any]]] = None,
    ) -> SyncSession:
        body: Dict[str, Any] = {}
        if answer is not None:
            body["answer"] = answer
        if status is not None:
            body["status"] = SessionStatus(status).value
        if ice_candidates is not None:
            body["ice_candidates"] = ice_candidates

        response = await self._request("PATCH", f"/sessions/{session_id}", session_id, json=body)
        return self._session(response)

    async def add_candidates(self, session_id: str, candidates: List[Dict[str, Any]]) -> SyncSession:
        response = await self._request(
            "POST", f"/sessions/{session_id}/candidates", session_id,
            json={"candidates": candidates},
        )
        return self._session(response)

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/sessions/{session_id}", session_id)

    def subscribe(self, session_id: str, on_change: SessionCallback) -> Subscription:
        task = asyncio.create_task(self._stream(session_id, on_change))
        key = id(task)
        self._stream_tasks[key] = task
        task.add_done_callback(lambda _: self._stream_tasks.pop(key, None))

        def _cancel() -> None:
            self._stream_tasks.pop(key, None)
            task.cancel()

        return Subscription(session_id, on_close=_cancel)

    async def close(self) -> None:
        for task in list(self._stream_tasks.values()):
            task.cancel()
        self._stream_tasks.clear()
        await self._client.aclose()

    # ===== Realtime stream =====

    def _ws_url(self, session_id: str) -> str:
        url = self.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{url}{API_PREFIX}/sessions/{session_id}/updates"

    async def _stream(self, session_id: str, on_change: SessionCallback) -> None:
        """Forward pushed sessions to on_change until cancelled or dropped"""
        url = self._ws_url(session_id)
        try:
            async with websockets.connect(url) as ws:
                logger.debug(f"Realtime stream connected for {session_id}")
                async for message in ws:
                    try:
                        session = SyncSession.model_validate(json.loads(message))
                    except ValueError as e:
                        logger.warning(f"Ignoring malformed realtime update: {e}")
                        continue
                    on_change(session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Polling covers for a missing stream
            logger.warning(f"Realtime stream for {session_id} unavailable: {e}")
