from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from drivers.negotiation import FakeNegotiator  # noqa: E402
from service.call_controller import ConnectionLifecycleController  # noqa: E402
from service.signal_store import SignalStore  # noqa: E402
from service.signaling import LocalMessageBus  # noqa: E402
from service.timer import ManualTimer  # noqa: E402


class CallbackCounter:
    def __init__(self) -> None:
        self.connected = 0
        self.disconnected = 0

    def on_connected(self) -> None:
        self.connected += 1

    def on_disconnected(self) -> None:
        self.disconnected += 1


class Peer:
    """A controller wired to a shared in-memory store with fake negotiation."""

    def __init__(self, store: SignalStore, name: str, **negotiator_kwargs) -> None:
        self.name = name
        self.bus = LocalMessageBus(store, sender_id=name)
        self.timer = ManualTimer()
        self.callbacks = CallbackCounter()
        self.negotiators: list[FakeNegotiator] = []

        def factory(ice_servers):
            negotiator = FakeNegotiator(ice_servers, **negotiator_kwargs)
            self.negotiators.append(negotiator)
            return negotiator

        self.controller = ConnectionLifecycleController(
            self.bus,
            negotiator_factory=factory,
            timer=self.timer,
            peer_id=name,
            ice_servers=[{"urls": ["stun:stun.example.org:3478"]}],
        )

    @property
    def negotiator(self) -> FakeNegotiator:
        return self.negotiators[-1]

    async def initialize(self, role) -> None:
        await self.controller.initialize(role, self.callbacks.on_connected, self.callbacks.on_disconnected)


async def settle(*peers, rounds: int = 10) -> None:
    """Lets queued signaling bounce between peers until everything is handled."""
    for _ in range(rounds):
        for peer in peers:
            controller = peer.controller if isinstance(peer, Peer) else peer
            await controller.drain()
        await asyncio.sleep(0)


@pytest.fixture()
def store() -> SignalStore:
    return SignalStore()


@pytest.fixture()
def make_peer(store):
    def _make(name: str, **negotiator_kwargs) -> Peer:
        return Peer(store, name, **negotiator_kwargs)

    return _make


@pytest.fixture()
def client():
    from main import app

    with TestClient(app) as test_client:
        yield test_client
