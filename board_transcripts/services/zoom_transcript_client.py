from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib import parse

from board_transcripts.services.ingestion_errors import (
    ConfigurationError,
    NotFoundError,
    NotReadyError,
    ProviderRequestError,
)
from board_transcripts.services.meeting_store import Meeting
from board_transcripts.services.provider_http import (
    FetchedTranscript,
    ProviderHttpClient,
    ProviderHttpError,
    TransportError,
)
from board_transcripts.services.provider_tokens import ProviderTokenSupplier
from board_transcripts.services.resilient_fetcher import download_with_backoff

logger = logging.getLogger(__name__)

TRANSCRIPT_FILE_TYPES = frozenset({"TRANSCRIPT", "CC"})
_MISSING_TRANSCRIPT_HINT = (
    "Enable 'Cloud recording' and 'Create audio transcript', record to the cloud, "
    "wait for processing, then try again."
)


@dataclass(frozen=True)
class ZoomRecordingFile:
    id: str
    file_type: str
    download_url: str


def find_transcript_file(recordings: Mapping[str, Any]) -> ZoomRecordingFile | None:
    files = recordings.get("recording_files")
    if not isinstance(files, list):
        return None
    for raw in files:
        if not isinstance(raw, Mapping) or raw.get("file_type") not in TRANSCRIPT_FILE_TYPES:
            continue
        download_url = raw.get("download_url")
        if not isinstance(download_url, str) or not download_url.strip():
            continue
        return ZoomRecordingFile(
            id=str(raw.get("id") or ""),
            file_type=str(raw["file_type"]),
            download_url=download_url.strip(),
        )
    return None


def build_download_url(download_url: str, token: str) -> str:
    if "access_token=" in download_url.lower():
        return download_url
    separator = "&" if "?" in download_url else "?"
    return f"{download_url}{separator}access_token={parse.quote(token, safe='')}"


def encode_meeting_uuid(meeting_uuid: str) -> str:
    # Zoom requires double encoding for UUIDs that contain "/" or start with "/".
    return parse.quote(parse.quote(meeting_uuid, safe=""), safe="")


class ZoomTranscriptClient:
    def __init__(
        self,
        *,
        token_supplier: ProviderTokenSupplier,
        api_base_url: str = "https://api.zoom.us/v2",
        timeout_seconds: float = 30.0,
        http_client: ProviderHttpClient | None = None,
        wait: Callable[[float], None] | None = None,
    ) -> None:
        self.token_supplier = token_supplier
        self.api_base_url = api_base_url.rstrip("/")
        self.http_client = http_client or ProviderHttpClient(
            provider="zoom",
            timeout_seconds=timeout_seconds,
        )
        self._wait = wait

    def fetch_transcript(
        self,
        meeting: Meeting,
        *,
        cancel_event: threading.Event | None = None,
    ) -> FetchedTranscript:
        if not meeting.provider_event_id:
            raise ConfigurationError("Meeting does not reference a Zoom meeting id.")
        zoom_meeting_id = parse.quote(meeting.provider_event_id, safe="")
        token = self.token_supplier.get_token()
        try:
            return self._fetch_with_token(zoom_meeting_id, token=token, cancel_event=cancel_event)
        except ProviderRequestError as exc:
            if exc.status_code == 401:
                logger.warning("Zoom rejected the access token meeting_id=%s; discarding cached token", meeting.id)
                self.token_supplier.invalidate()
            raise

    def _fetch_with_token(
        self,
        zoom_meeting_id: str,
        *,
        token: str,
        cancel_event: threading.Event | None,
    ) -> FetchedTranscript:
        recordings = self._get_json_or_none(
            f"{self.api_base_url}/meetings/{zoom_meeting_id}/recordings",
            token=token,
            cancel_event=cancel_event,
        )
        transcript_file = find_transcript_file(recordings) if recordings else None
        if transcript_file is None:
            transcript_file = self._discover_from_past_instances(
                zoom_meeting_id,
                token=token,
                cancel_event=cancel_event,
            )

        content = self._download(transcript_file, token=token, cancel_event=cancel_event)
        return FetchedTranscript(provider_transcript_id=transcript_file.id, content=content)

    def _discover_from_past_instances(
        self,
        zoom_meeting_id: str,
        *,
        token: str,
        cancel_event: threading.Event | None,
    ) -> ZoomRecordingFile:
        detail = self._get_json_or_none(
            f"{self.api_base_url}/meetings/{zoom_meeting_id}",
            token=token,
            cancel_event=cancel_event,
        )
        if detail is None:
            raise NotFoundError(
                "Zoom did not recognize this meeting id. Verify the host and app scopes (meeting:read:admin).",
            )
        base_uuid = detail.get("uuid")
        if not isinstance(base_uuid, str) or not base_uuid.strip():
            raise NotFoundError("Zoom did not return a meeting UUID. Verify the meeting id and app scopes.")

        instances = self._get_json_or_none(
            f"{self.api_base_url}/past_meetings/{encode_meeting_uuid(base_uuid)}/instances",
            token=token,
            cancel_event=cancel_event,
        )
        raw_instances = instances.get("meetings") if instances else None
        if not isinstance(raw_instances, list) or not raw_instances:
            raise NotReadyError(
                "Zoom returned no past instances for this meeting. Was the meeting held and recorded to the cloud?",
            )

        for instance in raw_instances:
            instance_uuid = instance.get("uuid") if isinstance(instance, Mapping) else None
            if not isinstance(instance_uuid, str) or not instance_uuid.strip():
                continue
            instance_recordings = self._get_json_or_none(
                f"{self.api_base_url}/past_meetings/{encode_meeting_uuid(instance_uuid)}/recordings",
                token=token,
                cancel_event=cancel_event,
            )
            if not instance_recordings:
                continue
            transcript_file = find_transcript_file(instance_recordings)
            if transcript_file is not None:
                logger.info(
                    "Found Zoom transcript in past instance instance_uuid=%s file_id=%s",
                    instance_uuid,
                    transcript_file.id,
                )
                return transcript_file

        raise NotReadyError(f"No cloud transcript file found for this meeting. {_MISSING_TRANSCRIPT_HINT}")

    def _download(
        self,
        transcript_file: ZoomRecordingFile,
        *,
        token: str,
        cancel_event: threading.Event | None,
    ) -> str:
        url = build_download_url(transcript_file.download_url, token)
        headers = {"Accept": "text/vtt, text/plain", "Accept-Encoding": "identity"}
        try:
            response = download_with_backoff(
                lambda: self.http_client.send("GET", url, headers=headers, cancel_event=cancel_event),
                description="Zoom transcript download",
                cancel_event=cancel_event,
                wait=self._wait,
            )
        except ProviderHttpError as exc:
            raise ProviderRequestError(
                f"Zoom transcript download failed with HTTP {exc.status_code}: {exc.detail()}",
                status_code=exc.status_code,
            ) from exc
        except TransportError as exc:
            raise ProviderRequestError(f"Zoom transcript download failed: {exc}") from exc
        content = response.text()
        if not content.strip():
            raise NotReadyError("Zoom returned an empty transcript content.")
        return content

    def _get_json_or_none(
        self,
        url: str,
        *,
        token: str,
        cancel_event: threading.Event | None,
    ) -> dict[str, Any] | None:
        try:
            payload = self.http_client.get_json(url, token=token, cancel_event=cancel_event)
        except ProviderHttpError as exc:
            if exc.status_code == 404:
                return None
            raise ProviderRequestError(
                f"Zoom query failed with HTTP {exc.status_code}: {exc.detail()}",
                status_code=exc.status_code,
            ) from exc
        except TransportError as exc:
            raise ProviderRequestError(f"Zoom could not be reached. Try again. Details: {exc}") from exc
        return payload or None
