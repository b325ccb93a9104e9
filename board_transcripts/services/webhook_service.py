from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status

from board_transcripts.core.config import Settings, get_settings
from board_transcripts.services.ingestion_errors import TranscriptIngestionError
from board_transcripts.services.meeting_resolver import (
    MeetingResolver,
    StoredEventIdMeetingResolver,
    extract_online_meeting_id_from_resource,
)
from board_transcripts.services.meeting_store import create_meeting_store
from board_transcripts.services.transcript_ingestion_service import TranscriptIngestionService
from board_transcripts.services.webhook_security import (
    compute_hmac_sha256_hex,
    verify_client_state,
    verify_zoom_signature,
)

logger = logging.getLogger(__name__)

ZOOM_URL_VALIDATION_EVENT = "endpoint.url_validation"
ZOOM_TRANSCRIPT_EVENTS = frozenset({"recording.transcript_completed", "recording.completed"})


@dataclass(frozen=True)
class ZoomEventOutcome:
    challenge_response: dict[str, str] | None = None
    meeting_id: str | None = None


def run_transcript_ingestion(meeting_id: str, source: str) -> None:
    """Background task body; failures are logged and never reach the provider."""
    settings = get_settings()
    try:
        count = TranscriptIngestionService(settings).ingest(meeting_id)
    except TranscriptIngestionError as exc:
        logger.warning(
            "Background transcript ingestion failed source=%s meeting_id=%s error_type=%s detail=%s",
            source,
            meeting_id,
            type(exc).__name__,
            exc,
        )
        return
    except Exception:
        logger.exception(
            "Background transcript ingestion crashed source=%s meeting_id=%s",
            source,
            meeting_id,
        )
        return
    logger.info(
        "Background transcript ingestion finished source=%s meeting_id=%s utterance_count=%s",
        source,
        meeting_id,
        count,
    )


class WebhookService:
    def __init__(
        self,
        settings: Settings,
        meeting_resolver: MeetingResolver | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_resolver = meeting_resolver or StoredEventIdMeetingResolver(
            create_meeting_store(settings),
        )

    def resolve_graph_notifications(self, raw_body: bytes) -> list[str]:
        """Return the internal meeting ids to ingest, one per usable notification."""
        payload = _load_json_object(raw_body)
        if payload is None:
            logger.warning("Graph notification body is empty or not valid JSON; acknowledging")
            return []

        items = payload.get("value")
        if not isinstance(items, list):
            logger.warning("Graph notification body has no value array; acknowledging")
            return []

        meeting_ids: list[str] = []
        for index, item in enumerate(items):
            try:
                meeting_id = self._resolve_graph_item(item, index=index)
            except Exception:
                logger.exception("Graph notification item failed index=%s", index)
                continue
            if meeting_id:
                meeting_ids.append(meeting_id)
        return meeting_ids

    def _resolve_graph_item(self, item: Any, *, index: int) -> str | None:
        if not isinstance(item, Mapping):
            logger.warning("Graph notification item skipped index=%s reason=not_an_object", index)
            return None

        client_state = item.get("clientState")
        if not verify_client_state(
            self.settings.graph_webhook_client_state,
            client_state if isinstance(client_state, str) else None,
        ):
            logger.warning("Graph notification item skipped index=%s reason=client_state_mismatch", index)
            return None

        lifecycle_event = item.get("lifecycleEvent")
        if lifecycle_event:
            logger.info(
                "Graph lifecycle notification received index=%s lifecycle_event=%s subscription_id=%s",
                index,
                lifecycle_event,
                item.get("subscriptionId"),
            )
            return None

        resource = item.get("resource")
        online_meeting_id = extract_online_meeting_id_from_resource(resource if isinstance(resource, str) else None)
        if not online_meeting_id:
            logger.info("Graph notification item skipped index=%s reason=no_online_meeting resource=%s", index, resource)
            return None

        meeting = self.meeting_resolver.resolve_teams_meeting(online_meeting_id)
        if meeting is None:
            logger.warning(
                "Graph notification item skipped index=%s reason=unknown_meeting online_meeting_id=%s",
                index,
                online_meeting_id,
            )
            return None
        return meeting.id

    def handle_zoom_event(
        self,
        raw_body: bytes,
        *,
        timestamp: str | None,
        signature: str | None,
    ) -> ZoomEventOutcome:
        secret = self.settings.zoom_webhook_secret_token
        if not secret:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="ZOOM_WEBHOOK_SECRET_TOKEN is not configured.",
            )

        is_signed = bool(timestamp or signature)
        if is_signed and not self.settings.zoom_disable_signature_validation:
            if not verify_zoom_signature(
                secret=secret,
                timestamp=timestamp,
                signature=signature,
                raw_body=raw_body,
            ):
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Invalid webhook signature.",
                )

        payload = _load_json_object(raw_body)
        if payload is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Request body must be a JSON object.",
            )

        event_type = _to_text(payload.get("event"))
        event_payload = payload.get("payload")
        event_payload = event_payload if isinstance(event_payload, Mapping) else {}

        if event_type == ZOOM_URL_VALIDATION_EVENT:
            plain_token = _to_text(event_payload.get("plainToken"))
            if not plain_token:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Validation payload is missing plainToken.",
                )
            logger.info("Zoom endpoint validation handled")
            return ZoomEventOutcome(
                challenge_response={
                    "plainToken": plain_token,
                    "encryptedToken": compute_hmac_sha256_hex(secret, plain_token),
                },
            )

        if not is_signed and not self.settings.zoom_disable_signature_validation:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing webhook signature.",
            )

        if event_type not in ZOOM_TRANSCRIPT_EVENTS:
            logger.info("Zoom event ignored event=%s", event_type or "(missing)")
            return ZoomEventOutcome()

        zoom_object = event_payload.get("object")
        zoom_object = zoom_object if isinstance(zoom_object, Mapping) else {}
        zoom_meeting_id = _to_text(zoom_object.get("id"))
        zoom_meeting_uuid = _to_text(zoom_object.get("uuid"))
        meeting = self.meeting_resolver.resolve_zoom_meeting(zoom_meeting_id, zoom_meeting_uuid)
        if meeting is None:
            logger.warning(
                "Zoom event ignored event=%s reason=unknown_meeting zoom_meeting_id=%s uuid=%s",
                event_type,
                zoom_meeting_id,
                zoom_meeting_uuid,
            )
            return ZoomEventOutcome()

        logger.info(
            "Zoom event accepted event=%s zoom_meeting_id=%s meeting_id=%s",
            event_type,
            zoom_meeting_id,
            meeting.id,
        )
        return ZoomEventOutcome(meeting_id=meeting.id)


def _load_json_object(raw_body: bytes) -> dict[str, Any] | None:
    if not raw_body or not raw_body.strip():
        return None
    try:
        parsed = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _to_text(value: Any) -> str | None:
    # Zoom sends numeric meeting ids.
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
