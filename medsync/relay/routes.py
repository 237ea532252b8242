"""
Relay Routes - rendezvous endpoints for device pairing

Session CRUD used by both devices while they negotiate, plus a WebSocket
stream that pushes the full session after every write. Only negotiation
metadata passes through here.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Set

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect, status

from medsync.errors import ErrorType, RelayError, SessionAlreadyAnsweredError, SessionNotFoundError
from medsync.pairing import is_valid_pairing_code, normalize_pairing_code
from medsync.relay.models import (
    AddCandidatesRequest,
    CreateSessionRequest,
    DeleteSessionResponse,
    SyncSession,
    UpdateSessionRequest,
)
from medsync.relay.store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["Sync Relay"])


class SessionEventHub:
    """Tracks WebSocket listeners per session and fans out updates"""

    def __init__(self):
        self._listeners: Dict[str, Set[WebSocket]] = defaultdict(set)

    def add(self, session_id: str, websocket: WebSocket) -> None:
        self._listeners[session_id].add(websocket)

    def remove(self, session_id: str, websocket: WebSocket) -> None:
        listeners = self._listeners.get(session_id)
        if listeners is None:
            return
        listeners.discard(websocket)
        if not listeners:
            del self._listeners[session_id]

    def listener_count(self, session_id: str) -> int:
        return len(self._listeners.get(session_id, ()))

    async def broadcast(self, session: SyncSession) -> None:
        """Send the session to every listener, dropping dead sockets"""
        disconnected: List[WebSocket] = []
        payload = session.model_dump(mode="json")

        for websocket in list(self._listeners.get(session.id, ())):
            try:
                await websocket.send_json(payload)
            except Exception as e:
                logger.debug(f"Failed to push update for {session.id}: {e}")
                disconnected.append(websocket)

        for websocket in disconnected:
            self.remove(session.id, websocket)

    async def close_session(self, session_id: str) -> None:
        for websocket in list(self._listeners.pop(session_id, ())):
            try:
                await websocket.close(code=1000, reason="Session closed")
            except Exception as e:
                logger.debug(f"Error closing listener for {session_id}: {e}")


def _store(request: Request) -> SessionStore:
    return request.app.state.session_store


def _hub(request: Request) -> SessionEventHub:
    return request.app.state.event_hub


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found or expired")


@router.post("/sessions", response_model=SyncSession, status_code=status.HTTP_201_CREATED)
async def create_session(request: Request, body: CreateSessionRequest) -> SyncSession:
    """Sender publishes its offer under a fresh pairing code"""
    code = normalize_pairing_code(body.pairing_code)
    if not is_valid_pairing_code(code):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid pairing code")

    try:
        return _store(request).create(code, body.offer)
    except RelayError as e:
        if e.error_type == ErrorType.PAIRING_CODE_IN_USE:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
        logger.error(f"Failed to create session: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/sessions/by-code/{code}", response_model=SyncSession)
async def find_session_by_code(request: Request, code: str) -> SyncSession:
    """Receiver looks up the session for the code it was given"""
    code = normalize_pairing_code(code)
    if not is_valid_pairing_code(code):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid pairing code")
    try:
        return _store(request).find_by_code(code)
    except SessionNotFoundError:
        raise _not_found()


@router.get("/sessions/{session_id}", response_model=SyncSession)
async def get_session(request: Request, session_id: str) -> SyncSession:
    try:
        return _store(request).get(session_id)
    except SessionNotFoundError:
        raise _not_found()


@router.patch("/sessions/{session_id}", response_model=SyncSession)
async def update_session(request: Request, session_id: str, body: UpdateSessionRequest) -> SyncSession:
    """Overwrite answer/status/candidates"""
    try:
        session = _store(request).update(
            session_id,
            answer=body.answer,
            status=body.status.value if body.status else None,
            ice_candidates=body.ice_candidates,
        )
    except SessionNotFoundError:
        raise _not_found()
    except SessionAlreadyAnsweredError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    await _hub(request).broadcast(session)
    return session


@router.post("/sessions/{session_id}/candidates", response_model=SyncSession)
async def add_candidates(request: Request, session_id: str, body: AddCandidatesRequest) -> SyncSession:
    """Append candidates atomically so neither side erases the other's"""
    try:
        session = _store(request).append_candidates(session_id, body.candidates)
    except SessionNotFoundError:
        raise _not_found()

    await _hub(request).broadcast(session)
    return session


@router.delete("/sessions/{session_id}", response_model=DeleteSessionResponse)
async def delete_session(request: Request, session_id: str) -> DeleteSessionResponse:
    if not _store(request).delete(session_id):
        raise _not_found()

    await _hub(request).close_session(session_id)
    logger.info(f"Sync session {session_id} deleted")
    return DeleteSessionResponse(status="deleted", session_id=session_id)


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    return {"status": "ok", "live_sessions": _store(request).count_live()}


@router.websocket("/sessions/{session_id}/updates")
async def session_updates(websocket: WebSocket, session_id: str) -> None:
    """
    Realtime change stream for one session.

    Sends the full session JSON after every write. Clients must not rely on
    it exclusively; polling GET /sessions/{id} is the fallback.
    """
    store: SessionStore = websocket.app.state.session_store
    hub: SessionEventHub = websocket.app.state.event_hub

    try:
        store.get(session_id)
    except SessionNotFoundError:
        await websocket.close(code=1008, reason="Session not found or expired")
        logger.warning(f"Update stream rejected: unknown session {session_id}")
        return

    await websocket.accept()
    hub.add(session_id, websocket)
    logger.debug(f"Update stream opened for {session_id} ({hub.listener_count(session_id)} listeners)")

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")

    except WebSocketDisconnect:
        hub.remove(session_id, websocket)
        logger.debug(f"Update stream closed for {session_id}")

    except Exception as e:
        logger.error(f"Update stream error for {session_id}: {e}")
        hub.remove(session_id, websocket)
