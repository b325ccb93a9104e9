import io
import json
import threading
from datetime import UTC, datetime, timedelta
from urllib import error

import pytest

from board_transcripts.services.ingestion_errors import AuthFailure
from board_transcripts.services.provider_tokens import GraphTokenSupplier, ZoomTokenSupplier


class _MockResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._payload = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return self._payload


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def test_graph_token_supplier_reuses_token_until_refresh_margin(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    requests: list[str] = []

    def fake_urlopen(req, timeout=30):  # type: ignore[no-untyped-def]
        body = req.data.decode("utf-8")
        requests.append(body)
        return _MockResponse({"access_token": f"token-{len(requests)}", "expires_in": 3600})

    monkeypatch.setattr("board_transcripts.services.provider_tokens.request.urlopen", fake_urlopen)
    clock = _Clock()
    supplier = GraphTokenSupplier(
        tenant_id="tenant-1",
        client_id="client-1",
        client_secret="secret-1",
        clock=clock,
    )

    assert supplier.get_token() == "token-1"
    clock.now += timedelta(minutes=57)
    assert supplier.get_token() == "token-1"
    clock.now += timedelta(minutes=2)
    assert supplier.get_token() == "token-2"

    assert len(requests) == 2
    assert "grant_type=client_credentials" in requests[0]
    assert "scope=https%3A%2F%2Fgraph.microsoft.com%2F.default" in requests[0]


def test_zoom_token_supplier_uses_account_credentials_grant_with_basic_auth(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, str] = {}

    def fake_urlopen(req, timeout=30):  # type: ignore[no-untyped-def]
        captured["url"] = req.full_url
        captured["authorization"] = req.headers.get("Authorization", "")
        return _MockResponse({"access_token": "zoom-token", "expires_in": 3599})

    monkeypatch.setattr("board_transcripts.services.provider_tokens.request.urlopen", fake_urlopen)
    supplier = ZoomTokenSupplier(
        account_id="acct-9",
        client_id="zoom-client",
        client_secret="zoom-secret",
        refresh_lock=threading.Lock(),
    )

    assert supplier.get_token() == "zoom-token"
    assert captured["url"] == "https://zoom.us/oauth/token?grant_type=account_credentials&account_id=acct-9"
    assert captured["authorization"] == "Basic em9vbS1jbGllbnQ6em9vbS1zZWNyZXQ="


def test_token_supplier_raises_auth_failure_on_rejected_credentials(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_urlopen(req, timeout=30):  # type: ignore[no-untyped-def]
        raise error.HTTPError(
            url=req.full_url,
            code=401,
            msg="unauthorized",
            hdrs=None,
            fp=io.BytesIO(b'{"error": "invalid_client"}'),
        )

    monkeypatch.setattr("board_transcripts.services.provider_tokens.request.urlopen", fake_urlopen)
    supplier = GraphTokenSupplier(tenant_id="t", client_id="c", client_secret="s")

    with pytest.raises(AuthFailure, match="HTTP 401"):
        supplier.get_token()


def test_token_supplier_requires_configured_credentials() -> None:
    supplier = ZoomTokenSupplier(account_id="", client_id="", client_secret="")

    with pytest.raises(AuthFailure, match="ZOOM_ACCOUNT_ID"):
        supplier.get_token()


def test_invalidate_forces_a_fresh_token_request(monkeypatch: pytest.MonkeyPatch) -> None:
    requests: list[str] = []

    def fake_urlopen(req, timeout=30):  # type: ignore[no-untyped-def]
        requests.append(req.full_url)
        return _MockResponse({"access_token": f"token-{len(requests)}", "expires_in": 3600})

    monkeypatch.setattr("board_transcripts.services.provider_tokens.request.urlopen", fake_urlopen)
    supplier = ZoomTokenSupplier(account_id="acct-1", client_id="zoom-client", client_secret="zoom-secret")

    assert supplier.get_token() == "token-1"
    supplier.invalidate()
    assert supplier.get_token() == "token-2"
    assert len(requests) == 2
