from __future__ import annotations

import html
import logging
import re
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
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
from board_transcripts.services.resilient_fetcher import (
    execute_with_fallback,
    is_fallback_worthy,
    is_transient_error_code,
)

logger = logging.getLogger(__name__)

_TEAMS_MEETING_ID_PATTERN = re.compile(r"19(?:%3a|:)meeting[^\s/?\"'<>]+", re.IGNORECASE)
_EMAIL_IN_ANGLE_BRACKETS = re.compile(r"<([^>]+)>")
_MAILBOX_PREFIXES = ("mailto:", "smtp:", "sip:", "userprincipalname:", "upn:", "email:")
_READY_STATUSES = frozenset({"completed", "complete", "ready", "published", "succeeded", "success"})
_PREVIEW_KEYWORDS = (
    "preview",
    "beta",
    "not supported in v1.0",
    "not available in v1.0",
    "use the /beta endpoint",
)
_PROVISIONING_REMEDIATION = (
    "Microsoft 365 reported that the organizer's Teams account is not fully provisioned "
    "for online meetings. Ask the organizer to sign in to Microsoft Teams at least once "
    "and ensure a Teams license and meeting policy that allows online meetings are assigned."
)


def normalize_mailbox(value: str | None) -> str | None:
    """Reduce the mailbox notations found in calendar data to a bare address."""
    if not value or not value.strip():
        return None

    cleaned = value.strip()
    separator_positions = [position for position in (cleaned.find(","), cleaned.find(";")) if position >= 0]
    if separator_positions:
        cleaned = cleaned[: min(separator_positions)].strip()

    bracket_match = _EMAIL_IN_ANGLE_BRACKETS.search(cleaned)
    if bracket_match:
        cleaned = bracket_match.group(1).strip()

    cleaned = cleaned.strip("\"'«»")

    lowered = cleaned.lower()
    for prefix in _MAILBOX_PREFIXES:
        if lowered.startswith(prefix):
            cleaned = cleaned[len(prefix):].strip()
            break

    if "%" in cleaned:
        cleaned = parse.unquote(cleaned)

    return cleaned or None


def extract_online_meeting_id(source: str | None) -> str | None:
    if not source or not source.strip():
        return None
    match = _TEAMS_MEETING_ID_PATTERN.search(html.unescape(source))
    if not match:
        return None
    return parse.unquote(match.group(0)) or None


@dataclass(frozen=True)
class TeamsTranscriptEntry:
    id: str
    created_at: datetime | None
    status: str | None

    @property
    def is_ready(self) -> bool:
        if not self.status:
            return True
        return self.status.strip().lower() in _READY_STATUSES


def select_transcript(entries: list[TeamsTranscriptEntry]) -> TeamsTranscriptEntry | None:
    if not entries:
        return None
    oldest = datetime.min.replace(tzinfo=UTC)

    def by_created(entry: TeamsTranscriptEntry) -> datetime:
        return entry.created_at or oldest

    ready = [entry for entry in entries if entry.is_ready]
    return max(ready or entries, key=by_created)


class TeamsTranscriptClient:
    def __init__(
        self,
        *,
        token_supplier: ProviderTokenSupplier,
        api_base_url: str = "https://graph.microsoft.com/v1.0",
        beta_api_base_url: str = "https://graph.microsoft.com/beta",
        default_mailbox: str = "",
        timeout_seconds: float = 30.0,
        http_client: ProviderHttpClient | None = None,
    ) -> None:
        self.token_supplier = token_supplier
        self.api_base_url = api_base_url.rstrip("/")
        self.beta_api_base_url = beta_api_base_url.rstrip("/")
        self.default_mailbox = default_mailbox
        self.http_client = http_client or ProviderHttpClient(
            provider="graph",
            timeout_seconds=timeout_seconds,
        )

    def fetch_transcript(
        self,
        meeting: Meeting,
        *,
        cancel_event: threading.Event | None = None,
    ) -> FetchedTranscript:
        raw_mailbox = meeting.provider_mailbox or meeting.host_identity or self.default_mailbox
        mailbox = normalize_mailbox(raw_mailbox)
        if not mailbox:
            raise ConfigurationError(
                "A Teams mailbox is required for transcript ingestion. Set the meeting mailbox "
                "or host identity, or configure GRAPH_MAILBOX_ADDRESS.",
            )
        if raw_mailbox and raw_mailbox.strip().lower() != mailbox.lower():
            logger.debug(
                "Normalized Teams mailbox meeting_id=%s original=%s normalized=%s",
                meeting.id,
                raw_mailbox,
                mailbox,
            )

        token = self.token_supplier.get_token()
        try:
            return self._fetch_for_mailbox(mailbox, meeting, token=token, cancel_event=cancel_event)
        except ProviderRequestError as exc:
            if exc.status_code == 401:
                logger.warning("Graph rejected the access token meeting_id=%s; discarding cached token", meeting.id)
                self.token_supplier.invalidate()
            raise

    def _fetch_for_mailbox(
        self,
        mailbox: str,
        meeting: Meeting,
        *,
        token: str,
        cancel_event: threading.Event | None,
    ) -> FetchedTranscript:
        user_id = self._resolve_user_id(mailbox, token=token, cancel_event=cancel_event)
        online_meeting_id, join_url = self._resolve_online_meeting_id(
            user_id,
            meeting,
            token=token,
            cancel_event=cancel_event,
        )
        entry = self._select_transcript_entry(
            user_id,
            online_meeting_id,
            token=token,
            cancel_event=cancel_event,
        )
        content = self._download_content(
            user_id,
            online_meeting_id,
            entry.id,
            token=token,
            cancel_event=cancel_event,
        )
        return FetchedTranscript(
            provider_transcript_id=entry.id,
            content=content,
            join_url=join_url,
        )

    def _resolve_user_id(
        self,
        mailbox: str,
        *,
        token: str,
        cancel_event: threading.Event | None,
    ) -> str:
        if _is_guid(mailbox):
            return mailbox

        url = f"{self.api_base_url}/users/{_quote(mailbox)}?$select=id"
        try:
            payload = self.http_client.get_json(url, token=token, cancel_event=cancel_event)
        except ProviderHttpError as exc:
            if exc.status_code == 404:
                raise NotFoundError(
                    f"Mailbox '{mailbox}' was not found in the Microsoft 365 directory.",
                ) from exc
            raise _graph_failure(exc, "resolving the Teams mailbox") from exc
        except TransportError as exc:
            raise _transport_failure(exc, "resolving the Teams mailbox") from exc

        user_id = _clean_text(payload.get("id"))
        if not user_id:
            raise NotFoundError(f"Could not resolve a directory id for mailbox '{mailbox}'.")
        return user_id

    def _resolve_online_meeting_id(
        self,
        user_id: str,
        meeting: Meeting,
        *,
        token: str,
        cancel_event: threading.Event | None,
    ) -> tuple[str, str | None]:
        if not meeting.provider_event_id:
            raise ConfigurationError("Meeting does not reference a Teams calendar event.")

        event_url = f"{self.api_base_url}/users/{_quote(user_id)}/events/{_quote(meeting.provider_event_id)}"
        resource: dict[str, Any] = {}
        event: dict[str, Any] = {}
        try:
            resource = self.http_client.get_json(
                f"{event_url}/onlineMeeting",
                token=token,
                cancel_event=cancel_event,
            )
            join_url = _join_url_from_online_meeting(resource)
            resource_id = _clean_text(resource.get("id"))
            if resource_id:
                return resource_id, join_url

            event = self.http_client.get_json(
                f"{event_url}?$select=onlineMeeting,onlineMeetingUrl",
                token=token,
                cancel_event=cancel_event,
            )
            inline_id = _online_meeting_id_from_event(event)
            if inline_id:
                return inline_id, _join_url_from_event(event) or join_url
        except ProviderHttpError as exc:
            if exc.status_code == 404:
                raise NotFoundError(
                    "Teams meeting not found when resolving the online meeting id. "
                    "Verify the organizer mailbox and the calendar event id.",
                ) from exc
            if _is_provisioning_incomplete(exc):
                raise ConfigurationError(_PROVISIONING_REMEDIATION) from exc
            raise _graph_failure(exc, "retrieving the Teams meeting details") from exc
        except TransportError as exc:
            raise _transport_failure(exc, "retrieving the Teams meeting details") from exc

        event_join_url = _join_url_from_event(event)
        resource_join_url = _join_url_from_online_meeting(resource)
        for source in (meeting.online_join_url, event_join_url, resource_join_url):
            extracted = extract_online_meeting_id(source)
            if extracted:
                return extracted, event_join_url or resource_join_url

        raise ConfigurationError(
            "Teams meeting is missing an online meeting id. The calendar event is not a "
            "conference-enabled event; ensure it is a Teams meeting with transcription enabled.",
        )

    def _select_transcript_entry(
        self,
        user_id: str,
        online_meeting_id: str,
        *,
        token: str,
        cancel_event: threading.Event | None,
    ) -> TeamsTranscriptEntry:
        path = f"/users/{_quote(user_id)}/onlineMeetings/{_quote(online_meeting_id)}/transcripts"
        try:
            payload = execute_with_fallback(
                self._variants(path, lambda url: self.http_client.get_json(url, token=token, cancel_event=cancel_event)),
                should_fall_back_to_beta,
                cancel_event=cancel_event,
            )
        except ProviderHttpError as exc:
            if exc.status_code == 400:
                raise NotReadyError(
                    "Microsoft 365 reported that the transcript is not available yet; processing "
                    f"has not finished. Wait and try again. Details: {exc.detail()}",
                ) from exc
            if exc.status_code == 404:
                raise NotReadyError(
                    "Microsoft 365 could not find a transcript for this Teams meeting. "
                    f"Ensure transcription was enabled. Details: {exc.detail()}",
                ) from exc
            raise _graph_failure(exc, "retrieving the Teams transcript list") from exc
        except TransportError as exc:
            raise _transport_failure(exc, "retrieving the Teams transcript list") from exc

        raw_entries = payload.get("value")
        entries: list[TeamsTranscriptEntry] = []
        if isinstance(raw_entries, list):
            for raw in raw_entries:
                if not isinstance(raw, Mapping):
                    continue
                parsed = _parse_transcript_entry(raw)
                if parsed is not None:
                    entries.append(parsed)
        selected = select_transcript(entries)
        if selected is None:
            raise NotReadyError("No transcript found for this Teams meeting. Ensure transcription was enabled.")

        logger.info(
            "Selected Teams transcript transcript_id=%s status=%s created_at=%s total=%s",
            selected.id,
            selected.status or "(unknown)",
            selected.created_at.isoformat() if selected.created_at else "(unknown)",
            len(entries),
        )
        return selected

    def _download_content(
        self,
        user_id: str,
        online_meeting_id: str,
        transcript_id: str,
        *,
        token: str,
        cancel_event: threading.Event | None,
    ) -> str:
        path = (
            f"/users/{_quote(user_id)}/onlineMeetings/{_quote(online_meeting_id)}"
            f"/transcripts/{_quote(transcript_id)}/content?$format=text/vtt"
        )
        headers = {"Authorization": f"Bearer {token}", "Accept": "text/vtt"}
        try:
            response = execute_with_fallback(
                self._variants(
                    path,
                    lambda url: self.http_client.send("GET", url, headers=headers, cancel_event=cancel_event),
                ),
                should_fall_back_to_beta,
                cancel_event=cancel_event,
            )
        except ProviderHttpError as exc:
            if exc.status_code == 404:
                raise NotReadyError(
                    "Microsoft 365 reported that the transcript content is no longer available. "
                    "Try reprocessing the meeting or verify transcript retention settings. "
                    f"Details: {exc.detail()}",
                ) from exc
            raise _graph_failure(exc, "downloading the Teams transcript content") from exc
        except TransportError as exc:
            raise _transport_failure(exc, "downloading the Teams transcript content") from exc

        content = response.text()
        if not content.strip():
            raise NotReadyError("Teams returned an empty transcript content.")
        return content

    def _variants(self, path: str, send: Callable[[str], Any]) -> list[Callable[[], Any]]:
        return [
            lambda base_url=base_url: send(f"{base_url}{path}")
            for base_url in (self.api_base_url, self.beta_api_base_url)
        ]


def should_fall_back_to_beta(failure: Exception) -> bool:
    if is_fallback_worthy(failure):
        return True
    return (
        isinstance(failure, ProviderHttpError)
        and failure.status_code == 403
        and _mentions_preview(failure)
    )


def _mentions_preview(failure: ProviderHttpError) -> bool:
    haystacks = (failure.graph_error.message, failure.body)
    for haystack in haystacks:
        if haystack and any(keyword in haystack.lower() for keyword in _PREVIEW_KEYWORDS):
            return True
    return False


def _is_provisioning_incomplete(failure: ProviderHttpError) -> bool:
    codes = {code.lower() for code in failure.error_codes}
    if not codes & {"unknownerror", "generalexception"}:
        return False

    combined = " ".join(
        part for part in (failure.graph_error.message, failure.body) if part
    ).lower()
    if not combined:
        return False
    if "teams" in combined and ("license" in combined or "enabled" in combined):
        return True
    if "enable teams" in combined:
        return True
    mentions_meeting = "online meeting" in combined or "onlinemeeting" in combined
    return mentions_meeting and any(
        marker in combined for marker in ("not available", "not enabled", "disabled")
    )


def _graph_failure(failure: ProviderHttpError, action: str) -> ProviderRequestError:
    transient = failure.status_code >= 500 or any(
        is_transient_error_code(code) for code in failure.error_codes
    )
    if transient:
        message = (
            f"Microsoft 365 reported an internal error while {action}. "
            f"Wait for processing to finish and try again. Details: {failure.detail()}"
        )
    else:
        message = f"Microsoft 365 returned an unexpected error while {action}. Details: {failure.detail()}"
    logger.error(
        "Graph request failed action=%s status_code=%s url=%s detail=%s",
        action,
        failure.status_code,
        failure.url,
        failure.detail(),
    )
    return ProviderRequestError(message, status_code=failure.status_code)


def _transport_failure(failure: TransportError, action: str) -> ProviderRequestError:
    return ProviderRequestError(f"Microsoft 365 could not be reached while {action}. Try again. Details: {failure}")


def _parse_transcript_entry(raw: Mapping[str, Any]) -> TeamsTranscriptEntry | None:
    transcript_id = _clean_text(raw.get("id"))
    if not transcript_id:
        return None
    return TeamsTranscriptEntry(
        id=transcript_id,
        created_at=_parse_created_at(raw.get("createdDateTime")),
        status=_clean_text(raw.get("status")) or _clean_text(raw.get("state")),
    )


def _parse_created_at(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _online_meeting_id_from_event(event: Mapping[str, Any]) -> str | None:
    online_meeting = event.get("onlineMeeting")
    if isinstance(online_meeting, Mapping):
        nested_id = _clean_text(online_meeting.get("id")) or _clean_text(online_meeting.get("onlineMeetingId"))
        if nested_id:
            return nested_id
    return _clean_text(event.get("onlineMeetingId"))


def _join_url_from_event(event: Mapping[str, Any]) -> str | None:
    online_meeting = event.get("onlineMeeting")
    if isinstance(online_meeting, Mapping):
        join_url = _clean_text(online_meeting.get("joinUrl")) or _clean_text(online_meeting.get("content"))
        if join_url:
            return join_url
    return _clean_text(event.get("onlineMeetingUrl"))


def _join_url_from_online_meeting(resource: Mapping[str, Any]) -> str | None:
    join_url = _clean_text(resource.get("joinWebUrl")) or _clean_text(resource.get("joinUrl"))
    if join_url:
        return join_url
    join_information = resource.get("joinInformation")
    if isinstance(join_information, Mapping):
        return _clean_text(join_information.get("content")) or _clean_text(join_information.get("joinUrl"))
    return None


def _is_guid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _quote(value: str) -> str:
    return parse.quote(value, safe="")


def _clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None
