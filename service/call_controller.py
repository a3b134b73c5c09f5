# service/call_controller.py
import inspect
import logging
import secrets
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from drivers.capture import CaptureBackend
from drivers.negotiation import AiortcNegotiator, Negotiator
from models.errors import ConnectionTimeoutError, NegotiationProtocolError
from models.negotiation import NegotiationState
from models.session import Role, Session
from models.signaling import MessageKind, SignalingMessage
from service.media_service import LocalMedia, MediaSink, SyntheticCaptureBackend, acquire_local_media
from service.peer_connection import PeerConnectionManager
from service.rooms import RoomRegistry
from service.signaling import DEFAULT_HISTORY_CAP, MessageBus
from service.timer import AsyncioTimer, ConnectionTimer

logger = logging.getLogger("call_controller")

DEFAULT_CONNECT_TIMEOUT = 30.0

Callback = Callable[[], Any]
NegotiatorFactory = Callable[[Sequence[Dict[str, Any]]], Negotiator]
SpeakFunc = Callable[[str, str], Union[None, Awaitable[None]]]


class ConnectionLifecycleController:
    """Top-level call object: session, negotiation, connect timeout and teardown.

    ``on_connected`` and ``on_disconnected`` each fire at most once per
    session. A connect timeout counts as the disconnect notification, after
    which a late "connected" signal is ignored.
    """

    def __init__(self, bus: MessageBus,
                 negotiator_factory: NegotiatorFactory = AiortcNegotiator,
                 registry: Optional[RoomRegistry] = None,
                 ice_servers: Optional[Sequence[Dict[str, Any]]] = None,
                 capture: Optional[CaptureBackend] = None,
                 fallback_capture: Optional[CaptureBackend] = None,
                 timer: Optional[ConnectionTimer] = None,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 local_sink: Optional[MediaSink] = None,
                 remote_sink: Optional[MediaSink] = None,
                 speak: Optional[SpeakFunc] = None,
                 peer_id: Optional[str] = None,
                 history_cap: int = DEFAULT_HISTORY_CAP):
        self.bus = bus
        self.negotiator_factory = negotiator_factory
        self.registry = registry or RoomRegistry()
        self.ice_servers = list(ice_servers or [])
        self.capture = capture
        self.fallback_capture = fallback_capture or SyntheticCaptureBackend()
        self.timer = timer or AsyncioTimer()
        self.connect_timeout = connect_timeout
        self.local_sink = local_sink
        self.remote_sink = remote_sink
        self.peer_id = peer_id or bus.sender_id or secrets.token_hex(4)
        self.history_cap = history_cap
        self.media = LocalMedia()

        self._speak = speak
        self._transcript_handler: Optional[Callable[[str], Any]] = None
        self._session: Optional[Session] = None
        self._manager: Optional[PeerConnectionManager] = None
        self._on_connected: Optional[Callback] = None
        self._on_disconnected: Optional[Callback] = None
        self._connected_notified = False
        self._disconnected_notified = False
        self._torn_down = False
        self.last_error: Optional[Exception] = None

    # -- session ---------------------------------------------------------

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def manager(self) -> Optional[PeerConnectionManager]:
        return self._manager

    @property
    def state(self) -> NegotiationState:
        if self._manager is not None:
            return self._manager.state
        return NegotiationState.DISCONNECTED if self._torn_down else NegotiationState.IDLE

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    def get_session_id(self) -> Optional[str]:
        return self._session.id if self._session else None

    def _use_session(self, session: Session):
        if self._manager is not None and not self._torn_down:
            raise NegotiationProtocolError(
                f"Session {self._session.id if self._session else '?'} is still active; hang up first")
        self._session = session
        self._manager = None
        self._connected_notified = False
        self._disconnected_notified = False
        self._torn_down = False
        self.last_error = None

    def create_session(self) -> str:
        self._use_session(self.registry.create_session())
        return self._session.id

    def join_session(self, session_id: str):
        self._use_session(self.registry.join_session(session_id))

    # -- lifecycle -------------------------------------------------------

    async def initialize(self, role: Union[Role, str], on_connected: Optional[Callback] = None,
                         on_disconnected: Optional[Callback] = None):
        role = Role(role)
        if self._session is None:
            if role != Role.INITIATOR:
                raise NegotiationProtocolError("join_session() must be called before initializing as joiner")
            self.create_session()
        elif self._session.role != role:
            raise NegotiationProtocolError(
                f"Session {self._session.id} was opened as {self._session.role.value}, not {role.value}")
        if self._manager is not None:
            raise NegotiationProtocolError(f"Session {self._session.id} already initialized")

        session = self._session
        tracks, synthetic = await acquire_local_media(self.capture, self.fallback_capture)
        self.media.attach(tracks, synthetic=synthetic)

        manager = PeerConnectionManager(
            session, self.bus, self.negotiator_factory(self.ice_servers),
            media=self.media, remote_sink=self.remote_sink, sender_id=self.peer_id,
            history_cap=self.history_cap, on_state_change=self._on_state_change,
        )
        manager.add_local_tracks(self.media.tracks)
        if self.local_sink is not None:
            for track in self.media.tracks:
                await self.local_sink.attach(track)
        self._manager = manager

        self.start(session, role, on_connected, on_disconnected)
        manager.start()
        if role == Role.JOINER:
            logger.info("Waiting for connection to be established...")
            await manager.join()

    def start(self, session: Session, role: Role, on_connected: Optional[Callback] = None,
              on_disconnected: Optional[Callback] = None):
        """Registers the callbacks and arms the single connect timer."""
        if session.role != role:
            raise NegotiationProtocolError(f"Role mismatch for session {session.id}")
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self.timer.arm(self.connect_timeout, self._on_timeout)
        logger.info(f"Session {session.id} started as {role.value}, timeout {self.connect_timeout}s")

    async def call(self):
        if self._manager is None or self._session is None:
            raise NegotiationProtocolError("Cannot call before initialize()")
        if self._session.role != Role.INITIATOR:
            raise NegotiationProtocolError("Only the initiator can create an offer")
        logger.info("Initiating call...")
        await self._manager.create_offer()

    async def drain(self):
        if self._manager is not None and not self._torn_down:
            await self._manager.drain()

    def toggle_audio(self, enabled: bool):
        self.media.toggle_audio(enabled)

    def toggle_video(self, enabled: bool):
        self.media.toggle_video(enabled)

    # -- notifications ---------------------------------------------------

    def _on_state_change(self, old: NegotiationState, new: NegotiationState):
        if new == NegotiationState.CONNECTED:
            self._notify_connected()
        elif new.is_terminal and not self._torn_down:
            self._notify_disconnected()

    def _invoke(self, callback: Optional[Callback], name: str):
        if callback is None:
            return
        try:
            callback()
        except Exception as e:
            logger.error(f"{name} callback failed: {e}", exc_info=True)

    def _notify_connected(self):
        if self._connected_notified or self._disconnected_notified:
            return
        self._connected_notified = True
        self.timer.cancel()
        logger.info("WebRTC connection established successfully")
        self._invoke(self._on_connected, "on_connected")

    def _notify_disconnected(self):
        if self._disconnected_notified:
            return
        self._disconnected_notified = True
        self.timer.cancel()
        logger.info("Disconnected from peer")
        self._invoke(self._on_disconnected, "on_disconnected")

    def _on_timeout(self):
        if self._connected_notified or self._disconnected_notified:
            return
        self.last_error = ConnectionTimeoutError(
            f"No peer connected to session {self.get_session_id()} within {self.connect_timeout}s")
        logger.warning(f"Connection timeout - no peer responded: {self.last_error}")
        if self._manager is not None:
            self._manager.handle_timeout()
        self._notify_disconnected()

    # -- teardown --------------------------------------------------------

    async def _step(self, name: str, func: Callable[[], Any]):
        try:
            result = func()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Teardown step '{name}' failed: {e}", exc_info=True)

    async def teardown(self):
        """Ordered, idempotent cleanup. Never raises."""
        if self._torn_down:
            return
        self._torn_down = True
        session, manager = self._session, self._manager
        logger.info(f"Tearing down session {session.id if session else None}")

        await self._step("cancel timer", self.timer.cancel)
        if session is not None:
            await self._step("notify peer", lambda: self.bus.publish(SignalingMessage.build(
                MessageKind.DISCONNECT, session.id, sender_id=self.peer_id)))
        if manager is not None:
            await self._step("close peer connection", manager.close)
        await self._step("stop local tracks", self.media.stop)
        for sink in (self.local_sink, self.remote_sink):
            if sink is not None:
                await self._step("detach media sink", sink.detach)
        if session is not None:
            await self._step("purge signaling history", lambda: self.bus.purge_session(session.id))
        if manager is not None:
            await self._step("reset negotiation state", manager.reset)

        if manager is not None:
            self._notify_disconnected()
        self._session = None

    async def hang_up(self):
        await self.teardown()

    # -- collaborators ---------------------------------------------------

    def set_transcript_handler(self, handler: Optional[Callable[[str], Any]]):
        self._transcript_handler = handler

    def handle_transcript(self, text: str):
        """Entry point for an external speech recognizer."""
        if self._transcript_handler is not None:
            self._invoke(lambda: self._transcript_handler(text), "on_transcript")

    async def speak(self, text: str, language_code: str):
        if self._speak is None:
            logger.warning("No speech synthesizer configured")
            return
        result = self._speak(text, language_code)
        if inspect.isawaitable(result):
            await result
