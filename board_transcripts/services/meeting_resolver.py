from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from board_transcripts.services.meeting_store import (
    MICROSOFT365_PROVIDER,
    ZOOM_PROVIDER,
    Meeting,
    MeetingStore,
)

logger = logging.getLogger(__name__)

COMPLETION_LOOKBACK = timedelta(hours=12)

_ONLINE_MEETING_RESOURCE = re.compile(
    r"onlineMeetings(?:\('(?P<quoted>[^']+)'\)|/(?P<segment>[^/?]+))",
    re.IGNORECASE,
)


def extract_online_meeting_id_from_resource(resource: str | None) -> str | None:
    if not resource:
        return None
    match = _ONLINE_MEETING_RESOURCE.search(resource)
    if not match:
        return None
    return match.group("quoted") or match.group("segment")


class MeetingResolver(ABC):
    """Maps a provider-side meeting reference back to an internal meeting."""

    @abstractmethod
    def resolve_teams_meeting(self, online_meeting_id: str) -> Meeting | None:
        raise NotImplementedError

    @abstractmethod
    def resolve_zoom_meeting(self, zoom_meeting_id: str | None, zoom_meeting_uuid: str | None) -> Meeting | None:
        raise NotImplementedError


class StoredEventIdMeetingResolver(MeetingResolver):
    def __init__(
        self,
        meeting_store: MeetingStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.meeting_store = meeting_store
        self._clock = clock or (lambda: datetime.now(UTC))

    def resolve_teams_meeting(self, online_meeting_id: str) -> Meeting | None:
        exact = self.meeting_store.find_by_provider_event_id(MICROSOFT365_PROVIDER, [online_meeting_id])
        if exact:
            return exact

        # Graph notifications carry the online meeting id, while meetings store the
        # calendar event id, so fall back to the most recent recently-ended meeting.
        candidate = self.meeting_store.find_latest_in_completion_window(
            MICROSOFT365_PROVIDER,
            ended_after=self._clock() - COMPLETION_LOOKBACK,
        )
        if candidate:
            logger.info(
                "Resolved Teams notification by completion window online_meeting_id=%s meeting_id=%s",
                online_meeting_id,
                candidate.id,
            )
        return candidate

    def resolve_zoom_meeting(self, zoom_meeting_id: str | None, zoom_meeting_uuid: str | None) -> Meeting | None:
        candidates = [value for value in (zoom_meeting_id, zoom_meeting_uuid) if value]
        if not candidates:
            return None
        return self.meeting_store.find_by_provider_event_id(ZOOM_PROVIDER, candidates)
