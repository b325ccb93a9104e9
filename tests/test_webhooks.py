import json
import logging
import time
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from board_transcripts.core.config import get_settings
from board_transcripts.main import app
from board_transcripts.services.email_sender import clear_email_sender_cache
from board_transcripts.services.meeting_store import (
    InMemoryMeetingStore,
    Meeting,
    clear_meeting_store_cache,
    create_meeting_store,
)
from board_transcripts.services.provider_tokens import clear_token_supplier_cache
from board_transcripts.services.transcript_store import clear_transcript_store_cache
from board_transcripts.services.webhook_security import build_zoom_signature, compute_hmac_sha256_hex
from board_transcripts.services.webhook_service import run_transcript_ingestion

client = TestClient(app)

_ZOOM_SECRET = "zoom-webhook-secret"
_CLIENT_STATE = "board-client-state"


def _clear_caches() -> None:
    get_settings.cache_clear()
    clear_meeting_store_cache()
    clear_transcript_store_cache()
    clear_token_supplier_cache()
    clear_email_sender_cache()


@pytest.fixture(autouse=True)
def webhook_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("MEETINGS_STORE", "memory")
    monkeypatch.setenv("TRANSCRIPTS_STORE", "memory")
    monkeypatch.setenv("EMAIL_DELIVERY", "memory")
    monkeypatch.setenv("ZOOM_WEBHOOK_SECRET_TOKEN", _ZOOM_SECRET)
    monkeypatch.setenv("ZOOM_DISABLE_SIGNATURE_VALIDATION", "false")
    monkeypatch.setenv("GRAPH_WEBHOOK_CLIENT_STATE", _CLIENT_STATE)
    _clear_caches()
    yield
    _clear_caches()


@pytest.fixture
def scheduled(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, str]]:
    calls: list[tuple[str, str]] = []

    def fake_run(meeting_id: str, source: str) -> None:
        calls.append((meeting_id, source))

    monkeypatch.setattr("board_transcripts.api.routes.webhooks.run_transcript_ingestion", fake_run)
    return calls


def _meeting_store() -> InMemoryMeetingStore:
    store = create_meeting_store(get_settings())
    assert isinstance(store, InMemoryMeetingStore)
    return store


def _signed_zoom_headers(raw_body: bytes, *, timestamp: str | None = None) -> dict[str, str]:
    sent_at = timestamp or str(int(time.time()))
    return {
        "content-type": "application/json",
        "x-zm-request-timestamp": sent_at,
        "x-zm-signature": build_zoom_signature(_ZOOM_SECRET, sent_at, raw_body),
    }


def test_graph_validation_token_is_echoed_as_plain_text() -> None:
    response = client.get("/api/webhooks/msgraph/events", params={"validationToken": "abc 123"})

    assert response.status_code == 200
    assert response.text == "abc 123"
    assert response.headers["content-type"].startswith("text/plain")


def test_graph_validation_without_token_is_rejected() -> None:
    response = client.get("/api/v1/webhooks/msgraph/events")

    assert response.status_code == 400


def test_graph_validation_token_is_echoed_on_post() -> None:
    response = client.post("/api/webhooks/msgraph/events?validationToken=handshake")

    assert response.status_code == 200
    assert response.text == "handshake"


def test_graph_notifications_schedule_only_trusted_transcript_items(
    scheduled: list[tuple[str, str]],
) -> None:
    _meeting_store().save(
        Meeting(id="meeting-graph", provider="Microsoft365", provider_event_id="MSo-1"),
    )
    body = {
        "value": [
            {"clientState": "forged", "resource": "users/u/onlineMeetings/MSo-1/transcripts/t1"},
            {"clientState": _CLIENT_STATE, "lifecycleEvent": "reauthorizationRequired"},
            "not-an-object",
            {"clientState": _CLIENT_STATE, "resource": "communications/onlineMeetings('MSo-1')/transcripts('t1')"},
        ],
    }

    response = client.post("/api/webhooks/msgraph/events", json=body)

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "scheduled_meeting_ids": ["meeting-graph"]}
    assert scheduled == [("meeting-graph", "msgraph")]


def test_graph_notifications_resolve_recent_meeting_by_completion_window(
    scheduled: list[tuple[str, str]],
) -> None:
    _meeting_store().save(
        Meeting(
            id="meeting-recent",
            provider="Microsoft365",
            provider_event_id="calendar-event-id",
            scheduled_at=datetime.now(UTC) - timedelta(hours=1),
        ),
    )
    body = {"value": [{"clientState": _CLIENT_STATE, "resource": "users/u/onlineMeetings/other-id/transcripts/t"}]}

    response = client.post("/api/webhooks/msgraph/events", json=body)

    assert response.status_code == 202
    assert scheduled == [("meeting-recent", "msgraph")]


def test_graph_notifications_with_invalid_json_are_acknowledged(
    scheduled: list[tuple[str, str]],
) -> None:
    response = client.post(
        "/api/webhooks/msgraph/events",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 202
    assert response.json()["scheduled_meeting_ids"] == []
    assert scheduled == []


def test_zoom_url_validation_returns_encrypted_token() -> None:
    raw_body = json.dumps(
        {"event": "endpoint.url_validation", "payload": {"plainToken": "plain-123"}},
    ).encode("utf-8")

    response = client.post("/api/webhooks/zoom/events", content=raw_body, headers=_signed_zoom_headers(raw_body))

    assert response.status_code == 200
    assert response.json() == {
        "plainToken": "plain-123",
        "encryptedToken": compute_hmac_sha256_hex(_ZOOM_SECRET, "plain-123"),
    }


def test_zoom_url_validation_is_answered_without_signature_headers() -> None:
    raw_body = b'{"event": "endpoint.url_validation", "payload": {"plainToken": "p"}}'

    response = client.post(
        "/api/webhooks/zoom/events",
        content=raw_body,
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["plainToken"] == "p"


def test_zoom_transcript_event_schedules_matching_meeting(
    scheduled: list[tuple[str, str]],
) -> None:
    _meeting_store().save(Meeting(id="meeting-zoom", provider="Zoom", provider_event_id="81234567890"))
    raw_body = json.dumps(
        {
            "event": "recording.transcript_completed",
            "payload": {"object": {"id": 81234567890, "uuid": "abc=="}},
        },
    ).encode("utf-8")

    response = client.post("/api/webhooks/zoom/events", content=raw_body, headers=_signed_zoom_headers(raw_body))

    assert response.status_code == 200
    assert response.json() == {"status": "accepted", "scheduled_meeting_ids": ["meeting-zoom"]}
    assert scheduled == [("meeting-zoom", "zoom")]


def test_zoom_event_with_tampered_body_is_rejected(
    scheduled: list[tuple[str, str]],
) -> None:
    raw_body = b'{"event": "recording.transcript_completed", "payload": {"object": {"id": 1}}}'
    headers = _signed_zoom_headers(raw_body)

    response = client.post(
        "/api/webhooks/zoom/events",
        content=raw_body.replace(b"1}", b"2}"),
        headers=headers,
    )

    assert response.status_code == 401
    assert scheduled == []


def test_zoom_event_with_stale_timestamp_is_rejected() -> None:
    raw_body = b'{"event": "recording.transcript_completed", "payload": {}}'
    stale = str(int(time.time()) - 600)

    response = client.post(
        "/api/webhooks/zoom/events",
        content=raw_body,
        headers=_signed_zoom_headers(raw_body, timestamp=stale),
    )

    assert response.status_code == 401


def test_zoom_event_without_signature_is_rejected() -> None:
    response = client.post(
        "/api/webhooks/zoom/events",
        json={"event": "recording.transcript_completed", "payload": {}},
    )

    assert response.status_code == 401


def test_zoom_events_unavailable_without_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ZOOM_WEBHOOK_SECRET_TOKEN", "")
    get_settings.cache_clear()

    response = client.post(
        "/api/webhooks/zoom/events",
        json={"event": "endpoint.url_validation", "payload": {"plainToken": "p"}},
    )

    assert response.status_code == 503


def test_zoom_non_transcript_event_is_ignored(
    scheduled: list[tuple[str, str]],
) -> None:
    raw_body = b'{"event": "meeting.started", "payload": {"object": {"id": 1}}}'

    response = client.post("/api/webhooks/zoom/events", content=raw_body, headers=_signed_zoom_headers(raw_body))

    assert response.status_code == 200
    assert response.json()["scheduled_meeting_ids"] == []
    assert scheduled == []


def test_background_ingestion_logs_failures_instead_of_raising(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        run_transcript_ingestion("missing-meeting", "zoom")

    assert "Background transcript ingestion failed" in caplog.text
    assert "NotFoundError" in caplog.text
