#!/usr/bin/env python3
"""
Signaling Status Monitor
Simple script to monitor the signaling history of one session
"""

import time
from datetime import datetime

import click
import requests

from app.config import get_signaling_url


def get_signaling_status(session_id, base_url="http://localhost:8104"):
    """Get signaling status for a session from the service."""
    try:
        response = requests.get(f"{base_url}/signaling/{session_id}/status", timeout=5)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        return {"error": str(e), "status": "connection_failed"}


def format_timestamp(timestamp_ms):
    """Format epoch milliseconds for display."""
    if not timestamp_ms:
        return "Never"
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def describe_phase(kinds):
    """Best guess of how far negotiation got, from the message kinds seen."""
    if kinds.get("disconnect"):
        return "hung up"
    if kinds.get("answer"):
        return "answered"
    if kinds.get("offer"):
        return "offered"
    if kinds.get("ping"):
        return "peer waiting"
    return "idle"


def print_status(status):
    """Print formatted status information."""
    print(f"\n{'='*60}")
    print(f"Signaling Status - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"{'='*60}")

    if "error" in status:
        print(f"❌ Error: {status['error']}")
        return

    kinds = status.get("kinds", {})
    print(f"📞 Session: {status.get('sessionId')}")
    print(f"🔄 Phase: {describe_phase(kinds).upper()}")
    print(f"📨 Messages: {status.get('message_count', 0)}")
    for kind, count in sorted(kinds.items()):
        print(f"   {kind}: {count}")
    print(f"⏰ Last Activity: {format_timestamp(status.get('last_activity'))}")


@click.command()
@click.argument("session_id")
@click.option("--url", default=get_signaling_url, help="Signaling server base URL")
@click.option("--interval", type=float, default=10.0, show_default=True, help="Seconds between checks")
def main(session_id, url, interval):
    """Main monitoring loop."""
    print("📡 Signaling Status Monitor")
    print("Press Ctrl+C to stop")

    try:
        while True:
            status = get_signaling_status(session_id, url)
            print_status(status)

            # Wait before next check
            time.sleep(interval)

    except KeyboardInterrupt:
        print("\n👋 Monitor stopped")


if __name__ == "__main__":
    main()
