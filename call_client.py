"""Command-line peer: creates or joins a session on a signaling server and holds the call."""

import asyncio
import logging
import os
import secrets
from typing import Optional

import click
import httpx
from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from app.config import get_capture_config, get_initial_ice_config, get_session_config, get_signaling_url
from drivers.capture import DeviceCaptureBackend
from drivers.negotiation import AiortcNegotiator, FakeNegotiator
from models.session import Role
from service.call_controller import ConnectionLifecycleController
from service.media_service import RecorderSink
from service.signaling import HttpMessageBus
from service.timer import AsyncioTimer

logger = logging.getLogger("call_client")


def _recorder_factory(prefix):
    if not prefix:
        return lambda track: MediaBlackhole()
    return lambda track: MediaRecorder(f"{prefix}-{track.kind}.{'wav' if track.kind == 'audio' else 'mp4'}")


async def fetch_ice_servers(client: httpx.AsyncClient, base_url: str):
    try:
        resp = await client.get(f"{base_url}/ice_config")
        resp.raise_for_status()
        return resp.json().get("ice_servers", [])
    except httpx.HTTPError as e:
        logger.warning(f"Could not fetch ICE config from {base_url}, using local defaults: {e}")
        return get_initial_ice_config()["ice_servers"]


def _capture_backend(no_capture: bool) -> Optional[DeviceCaptureBackend]:
    capture_config = get_capture_config()
    if no_capture or not capture_config["enabled"]:
        logger.info("Hardware capture disabled, sending synthetic media")
        return None
    return DeviceCaptureBackend.from_config(capture_config)


async def run_call(url: str, command: str, session_id: Optional[str] = None, record: Optional[str] = None,
                   no_capture: bool = False, fake: bool = False):
    session_config = get_session_config()
    base_url = url.rstrip("/")

    async with httpx.AsyncClient(timeout=10.0) as client:
        ice_servers = await fetch_ice_servers(client, base_url)
        bus = HttpMessageBus(base_url, sender_id=secrets.token_hex(4), client=client,
                             poll_interval=session_config["poll_interval"],
                             history_cap=session_config["history_cap"])
        capture = _capture_backend(no_capture)
        controller = ConnectionLifecycleController(
            bus,
            negotiator_factory=FakeNegotiator if fake else AiortcNegotiator,
            ice_servers=ice_servers,
            capture=capture,
            timer=AsyncioTimer(),
            connect_timeout=session_config["connect_timeout"],
            remote_sink=RecorderSink(_recorder_factory(record)),
            history_cap=session_config["history_cap"],
        )
        finished = asyncio.Event()

        def on_connected():
            print(f"✅ Connected (session {controller.get_session_id()})")

        def on_disconnected():
            print("❌ Disconnected")
            finished.set()

        if command == "create":
            role = Role.INITIATOR
            controller.create_session()
        else:
            role = Role.JOINER
            controller.join_session(session_id)
        print(f"📞 Session id: {controller.get_session_id()} ({role.value})")

        try:
            await controller.initialize(role, on_connected, on_disconnected)
            if role == Role.INITIATOR:
                await controller.call()
            await finished.wait()
        finally:
            await controller.hang_up()
            await bus.close()


def _hold(**kwargs):
    try:
        asyncio.run(run_call(**kwargs))
    except KeyboardInterrupt:
        click.echo("\n👋 Hung up")


@click.group()
@click.option("--url", default=get_signaling_url, help="Signaling server base URL")
@click.option("--record", metavar="PREFIX", help="Record remote tracks to PREFIX-<kind>.*")
@click.option("--no-capture", is_flag=True, help="Skip hardware capture, send synthetic media")
@click.option("--fake", is_flag=True, help="Use the deterministic negotiator (no media transport)")
@click.pass_context
def cli(ctx: click.Context, url: str, record: Optional[str], no_capture: bool, fake: bool):
    """Two-party call over the signaling service.

    \b
    Examples:
      peer-call create
      peer-call --record call join 482913
    """
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["record"] = record
    ctx.obj["no_capture"] = no_capture
    ctx.obj["fake"] = fake


@cli.command("create")
@click.pass_context
def create(ctx: click.Context):
    """Create a session and call the peer that joins it."""
    _hold(command="create", **ctx.obj)


@cli.command("join")
@click.argument("session_id")
@click.pass_context
def join(ctx: click.Context, session_id: str):
    """Join an existing session."""
    _hold(command="join", session_id=session_id, **ctx.obj)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
