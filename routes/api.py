# routes/api.py
import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException

from app.state import get_ice_config_state, get_room_registry, get_signal_store, update_ice_config_state
from models.errors import InvalidSessionIdError, SignalingDecodeError
from models.signaling import (IceConfig, MessagePage, PublishResult, SessionInfo, SignalingStatus,
                              decode_message)
from service.rooms import validate_session_id

logger = logging.getLogger("signaling_api")
router = APIRouter()


def _session_id_or_400(session_id: str) -> str:
    try:
        return validate_session_id(session_id)
    except InvalidSessionIdError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/ice_config")
async def get_ice_config():
    """Returns current relay/rendezvous server list."""
    config = await get_ice_config_state()
    logger.debug("ICE config requested")
    return config


@router.post("/ice_config")
async def update_ice_config(config: IceConfig):
    """Replaces the relay/rendezvous server list."""
    updated_config = await update_ice_config_state(config.model_dump())
    logger.info("ICE config updated")
    return updated_config


@router.post("/sessions", response_model=SessionInfo, response_model_by_alias=True)
async def create_session():
    """Allocates a new session id; the caller becomes the initiator."""
    registry = await get_room_registry()
    session = registry.create_session()
    return SessionInfo(session_id=session.id, role=session.role.value)


@router.post("/sessions/{session_id}/join", response_model=SessionInfo, response_model_by_alias=True)
async def join_session(session_id: str):
    """Joins a session as the joiner. Existence is not checked."""
    registry = await get_room_registry()
    try:
        session = registry.join_session(session_id)
    except InvalidSessionIdError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SessionInfo(session_id=session.id, role=session.role.value)


@router.post("/signaling/{session_id}/messages", response_model=PublishResult)
async def publish_message(session_id: str, body: Dict[str, Any]):
    """Appends a signaling message to the session history."""
    session_id = _session_id_or_400(session_id)
    try:
        message = decode_message(body)
    except SignalingDecodeError as e:
        logger.warning(f"Rejected signaling message for session {session_id}: {e}")
        raise HTTPException(status_code=422, detail=str(e))
    if message.session_id != session_id:
        raise HTTPException(status_code=400, detail="sessionId does not match the URL")

    store = await get_signal_store()
    cursor = store.put(message)
    logger.debug(f"Signal {message.kind.value} stored for session {session_id}")
    return PublishResult(status="ok", cursor=cursor)


@router.get("/signaling/{session_id}/messages", response_model=MessagePage)
async def list_messages(session_id: str, after: int = 0):
    """Returns messages newer than ``after``; expired entries are purged first."""
    session_id = _session_id_or_400(session_id)
    store = await get_signal_store()
    store.purge_expired(session_id)
    messages, cursor = store.list(session_id, after=after)
    return MessagePage(messages=[m.to_wire() for m in messages], cursor=cursor)


@router.delete("/signaling/{session_id}/messages")
async def purge_messages(session_id: str):
    """Removes the whole signaling history of a session."""
    session_id = _session_id_or_400(session_id)
    store = await get_signal_store()
    removed = store.purge_session(session_id)
    return {"status": "purged", "removed": removed}


@router.get("/signaling/{session_id}/status", response_model=SignalingStatus, response_model_by_alias=True)
async def get_signaling_status(session_id: str):
    """Returns message count, kinds and last activity for a session."""
    session_id = _session_id_or_400(session_id)
    store = await get_signal_store()
    return SignalingStatus(**store.status(session_id))
