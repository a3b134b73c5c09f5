# drivers/negotiation.py
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from aiortc import (MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection,
                    RTCSessionDescription)
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from models.signaling import CandidatePayload, SessionDescriptionPayload

logger = logging.getLogger("negotiation")


class Negotiator(AsyncIOEventEmitter):
    """Offer/answer/ICE capability set of a native peer connection.

    Events:
      - ``icecandidate`` (CandidatePayload): a local candidate to announce.
      - ``connectionstatechange`` / ``iceconnectionstatechange`` (str).
      - ``track`` (MediaStreamTrack): a remote track was received.
    """

    async def create_offer(self) -> SessionDescriptionPayload:
        raise NotImplementedError

    async def create_answer(self) -> SessionDescriptionPayload:
        raise NotImplementedError

    async def set_local_description(self, description: SessionDescriptionPayload):
        raise NotImplementedError

    async def set_remote_description(self, description: SessionDescriptionPayload):
        raise NotImplementedError

    async def add_ice_candidate(self, candidate: CandidatePayload):
        raise NotImplementedError

    def add_local_track(self, track: MediaStreamTrack):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


def build_rtc_configuration(ice_servers: Optional[Sequence[Dict[str, Any]]]) -> RTCConfiguration:
    servers = []
    for server in ice_servers or []:
        urls = server.get("urls") or []
        if urls:
            servers.append(RTCIceServer(
                urls=urls,
                username=server.get("username"),
                credential=server.get("credential"),
            ))
    return RTCConfiguration(iceServers=servers)


def iter_sdp_candidates(sdp: str) -> Iterator[Tuple[str, Optional[str], int]]:
    """Yields (candidate, mid, mline_index) for every ``a=candidate`` line."""
    mline_index = -1
    mid = None
    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m="):
            mline_index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:") and mline_index >= 0:
            yield line[len("a="):], mid, mline_index


class AiortcNegotiator(Negotiator):
    """Negotiator backed by aiortc's RTCPeerConnection.

    aiortc gathers candidates while setting the local description and embeds
    them in the SDP instead of trickling them, so they are re-announced here as
    individual candidate events. Remote candidates already present in the
    remote SDP are not applied a second time.
    """

    def __init__(self, ice_servers: Optional[Sequence[Dict[str, Any]]] = None):
        super().__init__()
        self.pc = RTCPeerConnection(build_rtc_configuration(ice_servers))
        self._remote_known: Set[str] = set()

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = self.pc.connectionState
            logger.info(f"Connection state={state}")
            self.emit("connectionstatechange", state)

        @self.pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            state = self.pc.iceConnectionState
            logger.info(f"ICE connection state={state}")
            self.emit("iceconnectionstatechange", state)

        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Received remote {track.kind} track")
            self.emit("track", track)

    @property
    def remote_description_set(self) -> bool:
        return self.pc.remoteDescription is not None

    async def create_offer(self) -> SessionDescriptionPayload:
        offer = await self.pc.createOffer()
        return SessionDescriptionPayload(sdp=offer.sdp, type=offer.type)

    async def create_answer(self) -> SessionDescriptionPayload:
        answer = await self.pc.createAnswer()
        return SessionDescriptionPayload(sdp=answer.sdp, type=answer.type)

    async def set_local_description(self, description: SessionDescriptionPayload):
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        local = self.pc.localDescription
        seen = set()
        for candidate, mid, index in iter_sdp_candidates(local.sdp if local else ""):
            if (candidate, mid) in seen:
                continue
            seen.add((candidate, mid))
            logger.debug("Generated ICE candidate")
            self.emit("icecandidate", CandidatePayload(candidate=candidate, sdp_mid=mid, sdp_mline_index=index))

    async def set_remote_description(self, description: SessionDescriptionPayload):
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        for candidate, _, _ in iter_sdp_candidates(description.sdp):
            self._remote_known.add(candidate)

    async def add_ice_candidate(self, candidate: CandidatePayload):
        if candidate.candidate in self._remote_known:
            logger.debug("ICE candidate already known from remote description")
            return
        value = candidate.candidate
        if value.startswith("candidate:"):
            value = value[len("candidate:"):]
        ice_candidate = candidate_from_sdp(value)
        ice_candidate.sdpMid = candidate.sdp_mid
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self.pc.addIceCandidate(ice_candidate)
        self._remote_known.add(candidate.candidate)

    def add_local_track(self, track: MediaStreamTrack):
        self.pc.addTrack(track)

    async def close(self):
        await self.pc.close()


class FakeRemoteTrack(MediaStreamTrack):
    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):
        raise MediaStreamError


DEFAULT_FAKE_CANDIDATES = ("candidate:1 1 udp 2122260223 192.0.2.10 50000 typ host",)


class FakeNegotiator(Negotiator):
    """Deterministic in-memory negotiator for tests and offline runs.

    Reports ``connected`` once it holds both descriptions and at least one
    remote candidate. Both the connection and the ICE state fire, so callers
    see the duplicate "connected" signals a real stack produces.
    """

    def __init__(self, ice_servers: Optional[Sequence[Dict[str, Any]]] = None,
                 local_candidates: Iterable[str] = DEFAULT_FAKE_CANDIDATES,
                 auto_connect: bool = True, remote_kinds: Iterable[str] = ("audio", "video"),
                 fail_on: Iterable[str] = ()):
        super().__init__()
        self.ice_servers = list(ice_servers or [])
        self.local_candidates = list(local_candidates)
        self.auto_connect = auto_connect
        self.remote_kinds = list(remote_kinds)
        self.fail_on = set(fail_on)
        self.local_description: Optional[SessionDescriptionPayload] = None
        self.remote_description: Optional[SessionDescriptionPayload] = None
        self.applied_candidates: List[CandidatePayload] = []
        self.tracks: List[MediaStreamTrack] = []
        self.calls: List[str] = []
        self.connected = False
        self.closed = False
        self._counter = 0

    @property
    def remote_description_set(self) -> bool:
        return self.remote_description is not None

    def _enter(self, name: str):
        self.calls.append(name)
        if self.closed:
            raise RuntimeError(f"{name} on closed connection")
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def _description(self, kind: str) -> SessionDescriptionPayload:
        self._counter += 1
        return SessionDescriptionPayload(type=kind, sdp=f"v=0\r\no=fake {self._counter} 1 IN IP4 0.0.0.0\r\ns={kind}\r\n")

    async def create_offer(self) -> SessionDescriptionPayload:
        self._enter("create_offer")
        return self._description("offer")

    async def create_answer(self) -> SessionDescriptionPayload:
        self._enter("create_answer")
        if self.remote_description is None or self.remote_description.type != "offer":
            raise RuntimeError("Cannot create answer without a remote offer")
        return self._description("answer")

    async def set_local_description(self, description: SessionDescriptionPayload):
        self._enter("set_local_description")
        self.local_description = description
        for candidate in self.local_candidates:
            self.emit("icecandidate", CandidatePayload(candidate=candidate, sdp_mid="0", sdp_mline_index=0))
        self._maybe_connect()

    async def set_remote_description(self, description: SessionDescriptionPayload):
        self._enter("set_remote_description")
        self.remote_description = description
        for kind in self.remote_kinds:
            self.emit("track", FakeRemoteTrack(kind))
        self._maybe_connect()

    async def add_ice_candidate(self, candidate: CandidatePayload):
        self._enter("add_ice_candidate")
        if self.remote_description is None:
            raise RuntimeError("Cannot add ICE candidate before the remote description")
        self.applied_candidates.append(candidate)
        self._maybe_connect()

    def add_local_track(self, track: MediaStreamTrack):
        self.tracks.append(track)

    def simulate_state(self, state: str):
        self.emit("connectionstatechange", state)

    def _maybe_connect(self):
        if (self.auto_connect and not self.connected and self.local_description is not None
                and self.remote_description is not None and self.applied_candidates):
            self.connected = True
            self.emit("connectionstatechange", "connected")
            self.emit("iceconnectionstatechange", "completed")

    async def close(self):
        self.calls.append("close")
        if self.closed:
            return
        self.closed = True
        self.emit("connectionstatechange", "closed")
