import asyncio
import logging
from typing import Any, Dict, Optional

from app.config import get_initial_ice_config, get_session_config, normalize_ice_servers
from service.rooms import RoomRegistry
from service.signal_store import SignalStore

logger = logging.getLogger("state")

signal_store: Optional[SignalStore] = None
room_registry: Optional[RoomRegistry] = None
ice_config: Dict[str, Any] = {}
ice_lock = asyncio.Lock()


async def init_state():
    global signal_store, room_registry, ice_config
    session_config = get_session_config()
    logger.info(f"Session config: {session_config}")

    if signal_store is None:
        signal_store = SignalStore(retention_seconds=session_config["retention_seconds"],
                                   sweep_interval=session_config["sweep_interval"])
        logger.info("Signal store initialized")

    if room_registry is None:
        room_registry = RoomRegistry(digits=session_config["session_id_digits"])

    if not ice_config:
        ice_config = get_initial_ice_config()
        logger.info("ICE config initialized successfully")


async def shutdown_state():
    global signal_store, room_registry
    signal_store = None
    room_registry = None
    logger.info("Signaling state released")


async def get_signal_store() -> SignalStore:
    if signal_store is None:
        logger.warning("Signal store not initialized, initializing now")
        await init_state()
    return signal_store


async def get_room_registry() -> RoomRegistry:
    if room_registry is None:
        await init_state()
    return room_registry


async def get_ice_config_state() -> Dict[str, Any]:
    async with ice_lock:
        return {"ice_servers": [dict(s) for s in ice_config.get("ice_servers", [])]}


async def update_ice_config_state(new_config: Dict[str, Any]) -> Dict[str, Any]:
    async with ice_lock:
        if "ice_servers" in new_config:
            ice_config["ice_servers"] = normalize_ice_servers(new_config["ice_servers"])
        return {"ice_servers": [dict(s) for s in ice_config.get("ice_servers", [])]}
