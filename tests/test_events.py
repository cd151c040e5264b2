"""
Structured event emission and the in-memory event store.
"""
import json
from io import StringIO
from datetime import datetime

import pytest

from observability.events import Component, EventEmitter, Severity
from observability.event_store import EventStore, event_store


@pytest.fixture(autouse=True)
def _clean_store():
    event_store.clear()
    yield
    event_store.clear()


class TestEventFormat:

    def test_required_fields(self):
        stream = StringIO()
        emitter = EventEmitter(Component.VOICE_SESSION, stream=stream)
        emitter.emit("test.event", session_id="vs_1", severity=Severity.INFO)

        event = json.loads(stream.getvalue().strip())
        for key in ("ts", "session_id", "component", "event_type", "severity", "correlation_id", "pii"):
            assert key in event
        assert event["component"] == "voice_session"
        assert event["correlation_id"] == "vs_1"
        assert event["pii"]["contains_pii"] is False
        datetime.fromisoformat(event["ts"])

    def test_writes_to_stdout_by_default(self, capsys):
        EventEmitter(Component.TOKEN_SERVER).emit("credential.issued", session_id="student-1")
        assert "credential.issued" in capsys.readouterr().out

    def test_state_change_severity(self):
        stream = StringIO()
        emitter = EventEmitter(Component.VOICE_SESSION, stream=stream)
        emitter.session_state_changed("vs_1", "connecting", "error", cause="Connexion perdue.")
        emitter.session_state_changed("vs_1", "idle", "connecting")

        first, second = [json.loads(line) for line in stream.getvalue().splitlines()]
        assert first["severity"] == "error"
        assert first["cause"] == "Connexion perdue."
        assert second["severity"] == "info"
        assert "cause" not in second

    def test_transcript_event_is_marked_pii(self):
        stream = StringIO()
        EventEmitter(Component.VOICE_SESSION, stream=stream).transcript_admitted(
            "vs_1", "remote", "Je comprends vos symptômes.", 10.0
        )
        event = json.loads(stream.getvalue())
        assert event["pii"]["contains_pii"] is True
        assert event["pii"]["fields"] == ["text"]
        assert event["text_length"] == len("Je comprends vos symptômes.")


class TestEventStore:

    def test_emitted_events_are_queryable(self):
        emitter = EventEmitter(Component.VOICE_SESSION, stream=StringIO())
        emitter.frame_discarded("vs_a", "frame is not valid JSON", 7)
        emitter.remote_error("vs_b", "Rate limited", code="rate_limit")

        stored = event_store.query(session_id="vs_a")
        assert [e["event_type"] for e in stored] == ["protocol.frame_discarded"]
        assert stored[0]["frame_length"] == 7

        by_type = event_store.query(event_type="remote.error")
        assert by_type[0]["code"] == "rate_limit"

    def test_store_is_bounded(self):
        store = EventStore(max_events=2)
        for i in range(3):
            store.store({
                "ts": "2025-01-01T00:00:00+00:00",
                "session_id": f"s{i}",
                "component": "voice_session",
                "event_type": "x",
                "severity": "info",
            })
        assert [e["session_id"] for e in store.query()] == ["s1", "s2"]
        assert store.get_stats()["total_events"] == 2
