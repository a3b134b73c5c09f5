# service/peer_connection.py
import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from aiortc import MediaStreamTrack

from drivers.negotiation import Negotiator
from models.errors import NegotiationProtocolError
from models.negotiation import Effect, NegotiationEvent, NegotiationState, Transition, transition
from models.session import Session
from models.signaling import CandidatePayload, MessageKind, PingPayload, SignalingMessage
from service.media_service import LocalMedia, MediaSink
from service.signaling import DEFAULT_HISTORY_CAP, MessageBus, RecentIds

logger = logging.getLogger("peer_connection")

StateCallback = Callable[[NegotiationState, NegotiationState], None]

_MESSAGE_EVENTS = {
    MessageKind.OFFER: NegotiationEvent.OFFER_RECEIVED,
    MessageKind.ANSWER: NegotiationEvent.ANSWER_RECEIVED,
    MessageKind.CANDIDATE: NegotiationEvent.CANDIDATE_RECEIVED,
    MessageKind.PING: NegotiationEvent.PING_RECEIVED,
    MessageKind.DISCONNECT: NegotiationEvent.REMOTE_HANGUP,
}

CONNECTED_STATES = ("connected", "completed")
FAILED_STATES = ("failed", "closed", "disconnected")


class PeerConnectionManager:
    """Drives offer/answer/candidate negotiation for one session.

    Inbound signaling and negotiator events are queued and handled one at a
    time by a single pump task; local commands (``create_offer``, ``join``)
    take the same lock, so effects never interleave. Candidates that arrive
    before the remote description are buffered and applied right after it is
    set.
    """

    def __init__(self, session: Session, bus: MessageBus, negotiator: Negotiator,
                 media: Optional[LocalMedia] = None, remote_sink: Optional[MediaSink] = None,
                 sender_id: Optional[str] = None, history_cap: int = DEFAULT_HISTORY_CAP,
                 on_state_change: Optional[StateCallback] = None):
        self.session = session
        self.bus = bus
        self.negotiator = negotiator
        self.media = media or LocalMedia()
        self.remote_sink = remote_sink
        self.sender_id = sender_id
        self.on_state_change = on_state_change

        self._state = NegotiationState.IDLE
        self._seen = RecentIds(history_cap)
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._pump_task: Optional[asyncio.Task] = None
        self._cancel_subscription: Optional[Callable[[], None]] = None
        self._pending_candidates: List[CandidatePayload] = []
        self._pending_offer: Optional[SignalingMessage] = None
        self._remote_description_set = False
        self._closed = False

        self.candidates_received = 0
        self.candidates_applied = 0
        self.remote_tracks: List[MediaStreamTrack] = []

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def pending_candidates(self) -> int:
        return len(self._pending_candidates)

    def start(self):
        self.negotiator.on("icecandidate", self._on_local_candidate)
        self.negotiator.on("connectionstatechange", self._on_transport_state)
        self.negotiator.on("iceconnectionstatechange", self._on_transport_state)
        self.negotiator.on("track", self._on_remote_track)
        self._pump_task = asyncio.ensure_future(self._pump())
        self._cancel_subscription = self.bus.subscribe(self.session.id, self.receive)
        logger.info(f"Listening for signals in session {self.session.id} as {self.session.role.value}")

    def add_local_tracks(self, tracks: Iterable[MediaStreamTrack]):
        for track in tracks:
            self.negotiator.add_local_track(track)
        logger.info("Added local stream to peer connection")

    # -- inbound ---------------------------------------------------------

    def receive(self, message: SignalingMessage):
        """Queues an inbound message. Redelivered message ids are dropped."""
        if self._closed:
            return
        if message.session_id != self.session.id:
            logger.debug(f"Ignoring signal for foreign session {message.session_id}")
            return
        if self.sender_id is not None and message.sender_id == self.sender_id:
            return
        if not self._seen.add(message.message_id):
            logger.debug(f"Duplicate signal {message.message_id} ignored")
            return
        self._inbox.put_nowait(("message", message))

    def _on_local_candidate(self, candidate: CandidatePayload):
        if self._closed or self._state.is_terminal:
            return
        logger.debug("Generated ICE candidate")
        self._send(MessageKind.CANDIDATE, candidate)

    def _on_transport_state(self, state: str):
        if not self._closed:
            self._inbox.put_nowait(("transport", state))

    def _on_remote_track(self, track: MediaStreamTrack):
        if not self._closed:
            self._inbox.put_nowait(("track", track))

    async def _pump(self):
        while True:
            kind, item = await self._inbox.get()
            try:
                async with self._lock:
                    await self._dispatch(kind, item)
            except Exception as e:
                logger.error(f"Error handling {kind} in session {self.session.id}: {e}", exc_info=True)
            finally:
                self._inbox.task_done()

    async def drain(self):
        """Waits until every queued message and event has been handled."""
        if self._pump_task is None:
            return
        await self._inbox.join()

    async def _dispatch(self, kind: str, item):
        if kind == "message":
            message: SignalingMessage = item
            logger.info(f"Received signaling message: {message.kind.value}")
            if message.kind == MessageKind.CANDIDATE:
                self.candidates_received += 1
            await self._handle(_MESSAGE_EVENTS[message.kind], message)
        elif kind == "transport":
            if item in CONNECTED_STATES:
                await self._handle(NegotiationEvent.TRANSPORT_CONNECTED)
            elif item in FAILED_STATES:
                await self._handle(NegotiationEvent.TRANSPORT_FAILED)
        elif kind == "track":
            self.remote_tracks.append(item)
            if self.remote_sink is not None:
                await self.remote_sink.attach(item)

    # -- state machine ---------------------------------------------------

    def _apply(self, event: NegotiationEvent, strict: bool = False) -> Optional[Transition]:
        try:
            result = transition(self._state, event, self.session.role)
        except NegotiationProtocolError as e:
            if strict:
                raise
            if event == NegotiationEvent.ANSWER_RECEIVED and self._state == NegotiationState.CONNECTED:
                logger.warning(f"Unexpected answer after connection established: {e}")
            else:
                logger.warning(f"Ignoring {event.value}: {e}")
            return None
        self._set_state(result.state)
        return result

    def _set_state(self, new_state: NegotiationState):
        old_state = self._state
        if new_state == old_state:
            return
        self._state = new_state
        logger.info(f"Session {self.session.id} negotiation {old_state.value} -> {new_state.value}")
        if self.on_state_change is not None:
            self.on_state_change(old_state, new_state)

    async def _handle(self, event: NegotiationEvent, message: Optional[SignalingMessage] = None,
                      strict: bool = False):
        result = self._apply(event, strict=strict)
        if result is None:
            return
        for effect in result.effects:
            try:
                await self._run_effect(effect, message)
            except Exception as e:
                logger.error(f"Negotiation failed during {effect.value}: {e}", exc_info=True)
                self._apply(NegotiationEvent.NEGOTIATION_ERROR)
                return

    async def _run_effect(self, effect: Effect, message: Optional[SignalingMessage]):
        if effect == Effect.SEND_OFFER:
            offer = await self.negotiator.create_offer()
            await self.negotiator.set_local_description(offer)
            logger.info("Created and set local offer")
            self._pending_offer = self._send(MessageKind.OFFER, offer)
        elif effect == Effect.SEND_PING:
            self._send(MessageKind.PING, PingPayload())
        elif effect == Effect.ANSWER_OFFER:
            await self._set_remote_description(message.payload)
            answer = await self.negotiator.create_answer()
            await self.negotiator.set_local_description(answer)
            logger.info("Created and set local answer")
            self._send(MessageKind.ANSWER, answer)
        elif effect == Effect.APPLY_ANSWER:
            await self._set_remote_description(message.payload)
        elif effect == Effect.BUFFER_CANDIDATE:
            self._pending_candidates.append(message.payload)
            logger.debug(f"Buffered ICE candidate ({len(self._pending_candidates)} pending)")
        elif effect == Effect.APPLY_CANDIDATE:
            if self._remote_description_set:
                await self._add_candidate(message.payload)
            else:
                self._pending_candidates.append(message.payload)
        elif effect == Effect.RESEND_OFFER:
            if self._pending_offer is not None:
                logger.info("Peer is looking to connect, re-sending pending offer")
                self.bus.publish(self._pending_offer)

    async def _set_remote_description(self, description):
        await self.negotiator.set_remote_description(description)
        self._remote_description_set = True
        logger.info(f"Set remote description from {description.type}")
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._add_candidate(candidate)

    async def _add_candidate(self, candidate: CandidatePayload):
        try:
            await self.negotiator.add_ice_candidate(candidate)
            self.candidates_applied += 1
            logger.debug("Added ICE candidate")
        except Exception as e:
            logger.error(f"Failed to add ICE candidate: {e}")

    def _send(self, kind: MessageKind, payload=None) -> SignalingMessage:
        message = SignalingMessage.build(kind, self.session.id, payload, sender_id=self.sender_id)
        self.bus.publish(message)
        return message

    # -- commands ----------------------------------------------------------

    async def create_offer(self):
        """Initiator only; raises NegotiationProtocolError otherwise."""
        async with self._lock:
            await self._handle(NegotiationEvent.CALL, strict=True)

    async def join(self):
        """Joiner only; announces itself to the initiator with a ping."""
        async with self._lock:
            await self._handle(NegotiationEvent.JOIN, strict=True)

    def handle_timeout(self):
        self._apply(NegotiationEvent.TIMEOUT)

    def toggle_audio(self, enabled: bool):
        self.media.toggle_audio(enabled)

    def toggle_video(self, enabled: bool):
        self.media.toggle_video(enabled)

    def send_disconnect(self):
        self._send(MessageKind.DISCONNECT)

    def cancel_subscription(self):
        if self._cancel_subscription is not None:
            self._cancel_subscription()

    async def close(self):
        """Stops delivery and closes the negotiator. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self.cancel_subscription()
        try:
            await self.negotiator.close()
        finally:
            if self._pump_task is not None:
                self._pump_task.cancel()
                try:
                    await self._pump_task
                except asyncio.CancelledError:
                    pass
                self._pump_task = None
            logger.info(f"Closed peer connection for session {self.session.id}")

    def reset(self):
        self._pending_candidates = []
        self._apply(NegotiationEvent.TEARDOWN)
