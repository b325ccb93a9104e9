from __future__ import annotations

import html
import logging
import threading
from collections.abc import Sequence
from typing import Protocol

from board_transcripts.core.config import Settings
from board_transcripts.services.email_sender import (
    EmailAttachment,
    EmailSender,
    create_email_sender,
    distinct_recipients,
)
from board_transcripts.services.ingestion_errors import (
    ConfigurationError,
    DeliveryError,
    NotFoundError,
    UnsupportedProviderError,
)
from board_transcripts.services.meeting_store import (
    MICROSOFT365_PROVIDER,
    ZOOM_PROVIDER,
    Meeting,
    MeetingStore,
    create_meeting_store,
    normalize_provider,
)
from board_transcripts.services.provider_http import FetchedTranscript
from board_transcripts.services.provider_tokens import (
    create_graph_token_supplier,
    create_zoom_token_supplier,
)
from board_transcripts.services.subtitle_parser import Cue, format_vtt, parse
from board_transcripts.services.teams_transcript_client import TeamsTranscriptClient, normalize_mailbox
from board_transcripts.services.transcript_store import (
    TranscriptRecord,
    TranscriptStore,
    Utterance,
    create_transcript_store,
)
from board_transcripts.services.zoom_transcript_client import ZoomTranscriptClient

logger = logging.getLogger(__name__)

MAX_UTTERANCE_TEXT_LENGTH = 4000
NOTIFICATION_PREVIEW_LINES = 10
_ELLIPSIS = "…"


class TranscriptSource(Protocol):
    def fetch_transcript(
        self,
        meeting: Meeting,
        *,
        cancel_event: threading.Event | None = None,
    ) -> FetchedTranscript: ...


def truncate_text(text: str, limit: int = MAX_UTTERANCE_TEXT_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(_ELLIPSIS))] + _ELLIPSIS


def attribute_cue(meeting: Meeting, cue: Cue) -> Utterance:
    user_id: str | None = None
    email = cue.speaker_email

    if email:
        by_email = next(
            (
                attendee
                for attendee in meeting.attendees
                if attendee.email and attendee.email.lower() == email.lower()
            ),
            None,
        )
        user_id = by_email.user_id if by_email else None

    if user_id is None and cue.speaker_name:
        by_name = next(
            (
                attendee
                for attendee in meeting.attendees
                if attendee.name and attendee.name.lower() == cue.speaker_name.lower()
            ),
            None,
        )
        if by_name:
            user_id = by_name.user_id
            email = email or by_name.email

    return Utterance(
        start=cue.start,
        end=cue.end,
        text=truncate_text(cue.text),
        speaker_name=cue.speaker_name,
        speaker_email=email,
        user_id=user_id,
    )


class TranscriptIngestionService:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore | None = None,
        transcript_store: TranscriptStore | None = None,
        teams_client: TranscriptSource | None = None,
        zoom_client: TranscriptSource | None = None,
        email_sender: EmailSender | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.transcript_store = transcript_store or create_transcript_store(settings)
        self.teams_client = teams_client or self._create_teams_client()
        self.zoom_client = zoom_client or self._create_zoom_client()
        self.email_sender = email_sender or create_email_sender(
            settings,
            graph_token_supplier=(
                create_graph_token_supplier(settings) if settings.has_graph_credentials() else None
            ),
        )

    def ingest(self, meeting_id: str, cancel_event: threading.Event | None = None) -> int:
        meeting = self.meeting_store.get_meeting(meeting_id)
        if meeting is None:
            raise NotFoundError(f"Meeting '{meeting_id}' was not found.")
        if not meeting.provider:
            raise ConfigurationError("Meeting does not have a conferencing provider set.")
        if not meeting.provider_event_id:
            raise ConfigurationError("Meeting does not have a provider event id set.")

        provider = normalize_provider(meeting.provider)
        if provider == MICROSOFT365_PROVIDER:
            source = self.teams_client
            missing_configuration = "Microsoft Graph credentials are not configured. Set GRAPH_TENANT_ID, GRAPH_CLIENT_ID and GRAPH_CLIENT_SECRET."
        elif provider == ZOOM_PROVIDER:
            source = self.zoom_client
            missing_configuration = "Zoom credentials are not configured. Set ZOOM_ACCOUNT_ID, ZOOM_CLIENT_ID and ZOOM_CLIENT_SECRET."
        else:
            raise UnsupportedProviderError(f"Unsupported provider: {meeting.provider}")
        if source is None:
            raise ConfigurationError(missing_configuration)

        logger.info(
            "Transcript ingestion started meeting_id=%s provider=%s",
            meeting.id,
            provider,
        )
        fetched = source.fetch_transcript(meeting, cancel_event=cancel_event)
        if fetched.join_url and not meeting.online_join_url:
            self.meeting_store.set_online_join_url(meeting.id, fetched.join_url)

        utterances = [attribute_cue(meeting, cue) for cue in parse(fetched.content)]
        count = self.transcript_store.upsert(
            meeting.id,
            provider,
            fetched.provider_transcript_id,
            utterances,
        )
        logger.info(
            "Transcript ingestion finished meeting_id=%s provider=%s provider_transcript_id=%s utterance_count=%s",
            meeting.id,
            provider,
            fetched.provider_transcript_id,
            count,
        )

        if self.settings.notifications_enabled:
            self._notify_attendees(meeting, utterances)
        return count

    def get_transcript(self, meeting_id: str) -> TranscriptRecord:
        record = self.transcript_store.get_latest_by_meeting_id(meeting_id)
        if record is None:
            raise NotFoundError(f"No transcript stored for meeting '{meeting_id}'.")
        return record

    def _notify_attendees(self, meeting: Meeting, utterances: Sequence[Utterance]) -> None:
        recipients = distinct_recipients(attendee.email or "" for attendee in meeting.attendees)
        if not recipients:
            return

        sender = normalize_mailbox(meeting.provider_mailbox) or normalize_mailbox(
            self.settings.graph_mailbox_address,
        )
        if not sender:
            logger.warning(
                "Transcript notification skipped meeting_id=%s reason=no_sender_mailbox",
                meeting.id,
            )
            return

        ordered = sorted(utterances, key=lambda utterance: utterance.start)
        attachment = EmailAttachment(
            file_name="transcript.vtt",
            content_type="text/vtt",
            content=format_vtt(ordered).encode("utf-8"),
        )
        try:
            self.email_sender.send(
                sender,
                recipients,
                _build_subject(meeting),
                self._build_notification_html(meeting, ordered),
                attachment,
            )
        except DeliveryError:
            logger.exception(
                "Transcript notification failed meeting_id=%s recipients=%s",
                meeting.id,
                len(recipients),
            )
            return
        logger.info(
            "Transcript notification sent meeting_id=%s recipients=%s",
            meeting.id,
            len(recipients),
        )

    def _build_notification_html(self, meeting: Meeting, utterances: Sequence[Utterance]) -> str:
        preview_items = []
        for utterance in utterances[:NOTIFICATION_PREVIEW_LINES]:
            speaker = utterance.speaker_name or utterance.speaker_email or "Unknown"
            preview_items.append(
                f"<li><strong>{html.escape(speaker)}</strong>: {html.escape(utterance.text)}</li>",
            )

        when = meeting.scheduled_at.strftime("%Y-%m-%d %H:%M %Z").strip() if meeting.scheduled_at else "Unknown"
        parts = [
            "<!DOCTYPE html><html lang='en'><head><meta charset='UTF-8'></head>",
            "<body style='font-family:Arial,sans-serif'>",
            "<h2>Meeting Transcript</h2>",
            f"<p><strong>Title:</strong> {html.escape(meeting.title)}</p>",
            f"<p><strong>When:</strong> {html.escape(when)}</p>",
            "<p>The transcript for your meeting has been ingested. Below is a short preview:</p>",
            "<ol>",
            "".join(preview_items),
            "</ol>",
        ]
        base_url = self.settings.app_base_url.strip().rstrip("/")
        if base_url:
            transcript_url = html.escape(f"{base_url}/meetings/{meeting.id}/transcripts", quote=True)
            parts.append(f"<p><a href='{transcript_url}'>View full transcript</a></p>")
        parts.append("<p>You are receiving this email because you attended this meeting.</p></body></html>")
        return "".join(parts)

    def _create_teams_client(self) -> TeamsTranscriptClient | None:
        if not self.settings.has_graph_credentials():
            return None
        return TeamsTranscriptClient(
            token_supplier=create_graph_token_supplier(self.settings),
            api_base_url=self.settings.graph_api_base_url,
            beta_api_base_url=self.settings.graph_beta_api_base_url,
            default_mailbox=self.settings.graph_mailbox_address,
            timeout_seconds=self.settings.graph_api_timeout_seconds,
        )

    def _create_zoom_client(self) -> ZoomTranscriptClient | None:
        if not self.settings.has_zoom_credentials():
            return None
        return ZoomTranscriptClient(
            token_supplier=create_zoom_token_supplier(self.settings),
            api_base_url=self.settings.zoom_api_base_url,
            timeout_seconds=self.settings.zoom_api_timeout_seconds,
        )


def _build_subject(meeting: Meeting) -> str:
    if meeting.scheduled_at:
        return f"Transcript: {meeting.title} ({meeting.scheduled_at:%Y-%m-%d})"
    return f"Transcript: {meeting.title}"
