import http.client
import io
import json
from urllib import error

import pytest

from board_transcripts.services.ingestion_errors import NotFoundError, NotReadyError, ProviderRequestError
from board_transcripts.services.meeting_store import Meeting
from board_transcripts.services.zoom_transcript_client import (
    ZoomTranscriptClient,
    build_download_url,
    encode_meeting_uuid,
    find_transcript_file,
)

_ZOOM = "https://api.zoom.us/v2"
_VTT = "WEBVTT\n\n1\n00:00:01.000 --> 00:00:03.000\nAlice: Call to order\n"


class _TruncatedResponse:
    def __enter__(self) -> "_TruncatedResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        raise http.client.IncompleteRead(b"WEBVTT\n\n1\n00:00", 120)


class _MockResponse:
    def __init__(self, payload: dict[str, object] | str) -> None:
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        self._payload = raw.encode("utf-8")

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
        return "zoom-token"

    def invalidate(self) -> None:
        self.invalidated = True


def _http_error(url: str, status_code: int) -> error.HTTPError:
    return error.HTTPError(
        url=url,
        code=status_code,
        msg="error",
        hdrs=None,
        fp=io.BytesIO(b'{"code": 3001, "message": "Meeting does not exist."}'),
    )


def _install_routes(
    monkeypatch: pytest.MonkeyPatch,
    routes: dict[str, list[object]],
) -> list[str]:
    calls: list[str] = []

    def fake_urlopen(req, timeout=30):  # type: ignore[no-untyped-def]
        target = req.full_url
        calls.append(target)
        if target not in routes or not routes[target]:
            raise AssertionError(f"Unexpected request: {target}")
        outcome = routes[target].pop(0)
        if isinstance(outcome, int):
            raise _http_error(target, outcome)
        if isinstance(outcome, _TruncatedResponse):
            return outcome
        return _MockResponse(outcome)  # type: ignore[arg-type]

    monkeypatch.setattr("board_transcripts.services.provider_http.request.urlopen", fake_urlopen)
    return calls


def _meeting(zoom_id: str = "81234567890") -> Meeting:
    return Meeting(id="meeting-z", provider="Zoom", provider_event_id=zoom_id)


def test_fetch_transcript_reads_transcript_file_from_meeting_recordings(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    download = "https://zoom.us/rec/download/abc"
    calls = _install_routes(
        monkeypatch,
        {
            f"{_ZOOM}/meetings/81234567890/recordings": [
                {
                    "recording_files": [
                        {"id": "mp4", "file_type": "MP4", "download_url": "https://zoom.us/rec/video"},
                        {"id": "tr-1", "file_type": "TRANSCRIPT", "download_url": download},
                    ],
                },
            ],
            f"{download}?access_token=zoom-token": [_VTT],
        },
    )
    client = ZoomTranscriptClient(token_supplier=_StaticTokenSupplier())  # type: ignore[arg-type]

    fetched = client.fetch_transcript(_meeting())

    assert fetched.provider_transcript_id == "tr-1"
    assert fetched.content == _VTT
    assert len(calls) == 2


def test_fetch_transcript_discovers_transcript_in_past_instances(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    download = "https://zoom.us/rec/download/inst?type=cc"
    base_uuid = encode_meeting_uuid("/base==")
    calls = _install_routes(
        monkeypatch,
        {
            f"{_ZOOM}/meetings/81234567890/recordings": [404],
            f"{_ZOOM}/meetings/81234567890": [{"id": 81234567890, "uuid": "/base=="}],
            f"{_ZOOM}/past_meetings/{base_uuid}/instances": [
                {"meetings": [{"uuid": "first"}, {"uuid": "second"}]},
            ],
            f"{_ZOOM}/past_meetings/first/recordings": [404],
            f"{_ZOOM}/past_meetings/second/recordings": [
                {"recording_files": [{"id": "cc-2", "file_type": "CC", "download_url": download}]},
            ],
            f"{download}&access_token=zoom-token": [_VTT],
        },
    )
    client = ZoomTranscriptClient(token_supplier=_StaticTokenSupplier())  # type: ignore[arg-type]

    fetched = client.fetch_transcript(_meeting())

    assert fetched.provider_transcript_id == "cc-2"
    assert base_uuid == "%252Fbase%253D%253D"
    assert calls[-1] == f"{download}&access_token=zoom-token"


def test_fetch_transcript_reports_remediation_when_no_instance_has_transcript(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _install_routes(
        monkeypatch,
        {
            f"{_ZOOM}/meetings/81234567890/recordings": [{"recording_files": []}],
            f"{_ZOOM}/meetings/81234567890": [{"uuid": "base"}],
            f"{_ZOOM}/past_meetings/base/instances": [{"meetings": [{"uuid": "only"}]}],
            f"{_ZOOM}/past_meetings/only/recordings": [
                {"recording_files": [{"id": "m4a", "file_type": "M4A", "download_url": "https://zoom.us/a"}]},
            ],
        },
    )
    client = ZoomTranscriptClient(token_supplier=_StaticTokenSupplier())  # type: ignore[arg-type]

    with pytest.raises(NotReadyError, match="Create audio transcript"):
        client.fetch_transcript(_meeting())


def test_fetch_transcript_maps_unknown_meeting_to_not_found(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _install_routes(
        monkeypatch,
        {
            f"{_ZOOM}/meetings/999/recordings": [404],
            f"{_ZOOM}/meetings/999": [404],
        },
    )
    client = ZoomTranscriptClient(token_supplier=_StaticTokenSupplier())  # type: ignore[arg-type]

    with pytest.raises(NotFoundError, match="meeting:read:admin"):
        client.fetch_transcript(_meeting("999"))


def test_fetch_transcript_retries_transient_download_failures(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    download = "https://zoom.us/rec/download/retry"
    _install_routes(
        monkeypatch,
        {
            f"{_ZOOM}/meetings/81234567890/recordings": [
                {"recording_files": [{"id": "tr", "file_type": "TRANSCRIPT", "download_url": download}]},
            ],
            f"{download}?access_token=zoom-token": [503, 502, _VTT],
        },
    )
    waits: list[float] = []
    client = ZoomTranscriptClient(
        token_supplier=_StaticTokenSupplier(),  # type: ignore[arg-type]
        wait=waits.append,
    )

    fetched = client.fetch_transcript(_meeting())

    assert fetched.content == _VTT
    assert waits == [1.0, 2.0]


def test_build_download_url_keeps_existing_access_token() -> None:
    assert build_download_url("https://zoom.us/rec?access_token=abc", "new") == "https://zoom.us/rec?access_token=abc"
    assert build_download_url("https://zoom.us/rec", "a b") == "https://zoom.us/rec?access_token=a%20b"


def test_find_transcript_file_ignores_entries_without_download_url() -> None:
    recordings = {
        "recording_files": [
            {"id": "x", "file_type": "TRANSCRIPT", "download_url": ""},
            {"id": "y", "file_type": "CC", "download_url": "https://zoom.us/cc"},
        ],
    }

    transcript_file = find_transcript_file(recordings)

    assert transcript_file is not None
    assert transcript_file.id == "y"


def test_fetch_transcript_retries_download_cut_off_mid_body(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    download = "https://zoom.us/rec/download/partial"
    calls = _install_routes(
        monkeypatch,
        {
            f"{_ZOOM}/meetings/81234567890/recordings": [
                {"recording_files": [{"id": "tr", "file_type": "TRANSCRIPT", "download_url": download}]},
            ],
            f"{download}?access_token=zoom-token": [_TruncatedResponse(), _VTT],
        },
    )
    waits: list[float] = []
    client = ZoomTranscriptClient(
        token_supplier=_StaticTokenSupplier(),  # type: ignore[arg-type]
        wait=waits.append,
    )

    fetched = client.fetch_transcript(_meeting())

    assert fetched.content == _VTT
    assert waits == [1.0]
    assert calls.count(f"{download}?access_token=zoom-token") == 2


def test_fetch_transcript_discards_cached_token_when_zoom_rejects_it(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _install_routes(monkeypatch, {f"{_ZOOM}/meetings/81234567890/recordings": [401]})
    supplier = _StaticTokenSupplier()
    client = ZoomTranscriptClient(token_supplier=supplier)  # type: ignore[arg-type]

    with pytest.raises(ProviderRequestError) as exc_info:
        client.fetch_transcript(_meeting())

    assert exc_info.value.status_code == 401
    assert supplier.invalidated is True


def test_fetch_transcript_keeps_cached_token_on_other_failures(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _install_routes(monkeypatch, {f"{_ZOOM}/meetings/81234567890/recordings": [403]})
    supplier = _StaticTokenSupplier()
    client = ZoomTranscriptClient(token_supplier=supplier)  # type: ignore[arg-type]

    with pytest.raises(ProviderRequestError):
        client.fetch_transcript(_meeting())

    assert supplier.invalidated is False
