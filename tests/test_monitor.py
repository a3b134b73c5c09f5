from __future__ import annotations

import requests
from click.testing import CliRunner

import monitor_signaling


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


def test_describe_phase_follows_furthest_message() -> None:
    assert monitor_signaling.describe_phase({}) == "idle"
    assert monitor_signaling.describe_phase({"ping": 1}) == "peer waiting"
    assert monitor_signaling.describe_phase({"ping": 1, "offer": 1}) == "offered"
    assert monitor_signaling.describe_phase({"offer": 1, "answer": 1}) == "answered"
    assert monitor_signaling.describe_phase({"answer": 1, "disconnect": 1}) == "hung up"


def test_format_timestamp_handles_missing_value() -> None:
    assert monitor_signaling.format_timestamp(None) == "Never"
    assert len(monitor_signaling.format_timestamp(1_700_000_000_000)) == len("2023-11-14 22:13:20")


def test_status_request_and_failure(monkeypatch, capsys) -> None:
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        return FakeResponse({"sessionId": "482913", "message_count": 2, "kinds": {"offer": 1, "answer": 1},
                             "last_activity": None})

    monkeypatch.setattr(monitor_signaling.requests, "get", fake_get)
    status = monitor_signaling.get_signaling_status("482913", "http://signal.test")
    assert calls == ["http://signal.test/signaling/482913/status"]
    monitor_signaling.print_status(status)
    assert "ANSWERED" in capsys.readouterr().out

    def failing_get(url, timeout):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setattr(monitor_signaling.requests, "get", failing_get)
    status = monitor_signaling.get_signaling_status("482913", "http://signal.test")
    assert status["status"] == "connection_failed"
    monitor_signaling.print_status(status)
    assert "refused" in capsys.readouterr().out


def test_main_polls_until_interrupted(monkeypatch) -> None:
    seen = []

    def fake_status(session_id, base_url):
        seen.append((session_id, base_url))
        return {"sessionId": session_id, "message_count": 1, "kinds": {"ping": 1}, "last_activity": None}

    def stop(interval):
        assert interval == 0.5
        raise KeyboardInterrupt

    monkeypatch.setattr(monitor_signaling, "get_signaling_status", fake_status)
    monkeypatch.setattr(monitor_signaling.time, "sleep", stop)

    result = CliRunner().invoke(monitor_signaling.main, ["482913", "--url", "http://signal.test",
                                                         "--interval", "0.5"])
    assert result.exit_code == 0
    assert seen == [("482913", "http://signal.test")]
    assert "PEER WAITING" in result.output
    assert "Monitor stopped" in result.output
