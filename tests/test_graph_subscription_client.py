import io
import json
from datetime import UTC, datetime, timedelta
from urllib import error

import pytest

from board_transcripts.services.graph_subscription_client import (
    GraphSubscriptionClient,
    build_online_meetings_resource,
    clamp_subscription_lifetime,
    validate_notification_url,
)
from board_transcripts.services.ingestion_errors import ConfigurationError, ProviderRequestError

_NOW = datetime(2026, 3, 2, 18, 0, tzinfo=UTC)
_SUBSCRIPTIONS_URL = "https://graph.microsoft.com/v1.0/subscriptions"
_NOTIFICATION_URL = "https://boards.example.com/api/webhooks/msgraph/events"


class _MockResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._payload = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return self._payload


class _StaticTokenSupplier:
    def __init__(self) -> None:
        self.invalidated = False

    def get_token(self) -> str:
        return "graph-token"

    def invalidate(self) -> None:
        self.invalidated = True


def _client(
    supplier: _StaticTokenSupplier | None = None,
    notification_url: str | None = _NOTIFICATION_URL,
) -> GraphSubscriptionClient:
    return GraphSubscriptionClient(
        token_supplier=supplier or _StaticTokenSupplier(),  # type: ignore[arg-type]
        notification_url=notification_url,
        client_state="board-secret",
        clock=lambda: _NOW,
    )


def test_clamp_subscription_lifetime_applies_graph_limits() -> None:
    assert clamp_subscription_lifetime(None) == timedelta(minutes=55)
    assert clamp_subscription_lifetime(timedelta(minutes=1)) == timedelta(minutes=5)
    assert clamp_subscription_lifetime(timedelta(minutes=90)) == timedelta(minutes=90)
    assert clamp_subscription_lifetime(timedelta(hours=48)) == timedelta(hours=23)


@pytest.mark.parametrize(
    "url",
    [
        "",
        "   ",
        "http://boards.example.com/api/webhooks/msgraph/events",
        "/api/webhooks/msgraph/events",
        "https:///missing-host",
    ],
)
def test_validate_notification_url_rejects_non_https_urls(url: str) -> None:
    with pytest.raises(ConfigurationError):
        validate_notification_url(url)


def test_validate_notification_url_accepts_absolute_https_url() -> None:
    assert validate_notification_url(f" {_NOTIFICATION_URL} ") == _NOTIFICATION_URL


def test_build_online_meetings_resource_filters_by_utc_start() -> None:
    start = datetime(2026, 3, 2, 8, 30, tzinfo=UTC)

    assert build_online_meetings_resource(start) == (
        "/communications/onlineMeetings?$filter=StartDateTime ge 2026-03-02T08:30:00Z"
    )


def test_create_subscription_posts_defaults_and_parses_response(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout=30):  # type: ignore[no-untyped-def]
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["authorization"] = req.headers.get("Authorization")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return _MockResponse(
            {
                "id": "sub-1",
                "resource": captured["body"]["resource"],  # type: ignore[index]
                "changeType": "updated",
                "expirationDateTime": "2026-03-02T18:55:00.1234567Z",
                "clientState": "board-secret",
            },
        )

    monkeypatch.setattr("board_transcripts.services.provider_http.request.urlopen", fake_urlopen)

    subscription = _client().create_teams_transcript_subscription()

    body = captured["body"]
    assert captured["url"] == _SUBSCRIPTIONS_URL
    assert captured["method"] == "POST"
    assert captured["authorization"] == "Bearer graph-token"
    assert body == {
        "changeType": "updated",
        "notificationUrl": _NOTIFICATION_URL,
        "resource": "/communications/onlineMeetings?$filter=StartDateTime ge 2026-03-02T06:00:00Z",
        "expirationDateTime": "2026-03-02T18:55:00Z",
        "latestSupportedTlsVersion": "v1_2",
        "clientState": "board-secret",
    }
    assert subscription.id == "sub-1"
    assert subscription.change_type == "updated"
    assert subscription.client_state == "board-secret"
    assert subscription.expiration_date_time == datetime(2026, 3, 2, 18, 55, 0, 123456, tzinfo=UTC)


def test_create_subscription_clamps_requested_lifetime(monkeypatch: pytest.MonkeyPatch) -> None:
    bodies: list[dict[str, object]] = []

    def fake_urlopen(req, timeout=30):  # type: ignore[no-untyped-def]
        bodies.append(json.loads(req.data.decode("utf-8")))
        return _MockResponse({"id": f"sub-{len(bodies)}"})

    monkeypatch.setattr("board_transcripts.services.provider_http.request.urlopen", fake_urlopen)
    client = _client()

    short = client.create_teams_transcript_subscription(lifetime=timedelta(minutes=2))
    long = client.create_teams_transcript_subscription(
        start=datetime(2026, 3, 1, 9, 0),
        lifetime=timedelta(days=3),
    )

    assert bodies[0]["expirationDateTime"] == "2026-03-02T18:05:00Z"
    assert bodies[1]["expirationDateTime"] == "2026-03-03T17:00:00Z"
    assert bodies[1]["resource"] == "/communications/onlineMeetings?$filter=StartDateTime ge 2026-03-01T09:00:00Z"
    assert short.expiration_date_time == _NOW + timedelta(minutes=5)
    assert long.resource == bodies[1]["resource"]


def test_create_subscription_rejects_plain_http_notification_url(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_urlopen(req, timeout=30):  # type: ignore[no-untyped-def]
        raise AssertionError(f"Unexpected request: {req.full_url}")

    monkeypatch.setattr("board_transcripts.services.provider_http.request.urlopen", fake_urlopen)
    client = _client(notification_url="http://boards.example.com/api/webhooks/msgraph/events")

    with pytest.raises(ConfigurationError, match="absolute HTTPS URL"):
        client.create_teams_transcript_subscription()


def test_create_subscription_discards_token_when_graph_rejects_it(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_urlopen(req, timeout=30):  # type: ignore[no-untyped-def]
        raise error.HTTPError(
            url=req.full_url,
            code=401,
            msg="Unauthorized",
            hdrs=None,
            fp=io.BytesIO(b'{"error": {"code": "InvalidAuthenticationToken", "message": "expired"}}'),
        )

    monkeypatch.setattr("board_transcripts.services.provider_http.request.urlopen", fake_urlopen)
    supplier = _StaticTokenSupplier()

    with pytest.raises(ProviderRequestError) as exc_info:
        _client(supplier).create_teams_transcript_subscription()

    assert exc_info.value.status_code == 401
    assert supplier.invalidated is True


def test_create_subscription_requires_identifier_in_response(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "board_transcripts.services.provider_http.request.urlopen",
        lambda req, timeout=30: _MockResponse({"resource": "x"}),
    )

    with pytest.raises(ProviderRequestError, match="without an identifier"):
        _client().create_teams_transcript_subscription()
