from __future__ import annotations

import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any

from board_transcripts.core.config import Settings

DEFAULT_MEETING_DURATION = timedelta(hours=2)

MICROSOFT365_PROVIDER = "Microsoft365"
ZOOM_PROVIDER = "Zoom"
_PROVIDER_ALIASES = {
    "microsoft365": MICROSOFT365_PROVIDER,
    "microsoft 365": MICROSOFT365_PROVIDER,
    "microsoft_365": MICROSOFT365_PROVIDER,
    "teams": MICROSOFT365_PROVIDER,
    "microsoft_teams": MICROSOFT365_PROVIDER,
    "microsoft teams": MICROSOFT365_PROVIDER,
    "m365": MICROSOFT365_PROVIDER,
    "office365": MICROSOFT365_PROVIDER,
    "zoom": ZOOM_PROVIDER,
}


def normalize_provider(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    return _PROVIDER_ALIASES.get(value.strip().lower())


def provider_tag_filter(provider: str) -> dict[str, str]:
    """Mongo filter matching every stored spelling of a canonical provider tag."""
    spellings = [alias for alias, canonical in _PROVIDER_ALIASES.items() if canonical == provider]
    spellings.append(provider.lower())
    alternatives = "|".join(re.escape(spelling) for spelling in sorted(set(spellings)))
    return {"$regex": rf"^\s*(?:{alternatives})\s*$", "$options": "i"}


@dataclass(frozen=True)
class Attendee:
    name: str | None = None
    email: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class Meeting:
    id: str
    title: str = ""
    scheduled_at: datetime | None = None
    end_at: datetime | None = None
    provider: str | None = None
    provider_event_id: str | None = None
    provider_mailbox: str | None = None
    host_identity: str | None = None
    online_join_url: str | None = None
    attendees: tuple[Attendee, ...] = field(default_factory=tuple)

    def effective_end(self) -> datetime | None:
        if self.end_at:
            return self.end_at
        if self.scheduled_at:
            return self.scheduled_at + DEFAULT_MEETING_DURATION
        return None

    def to_record(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "title": self.title,
            "scheduled_at": self.scheduled_at,
            "end_at": self.end_at,
            "provider": self.provider,
            "provider_event_id": self.provider_event_id,
            "provider_mailbox": self.provider_mailbox,
            "host_identity": self.host_identity,
            "online_join_url": self.online_join_url,
            "attendees": [
                {"name": attendee.name, "email": attendee.email, "user_id": attendee.user_id}
                for attendee in self.attendees
            ],
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Meeting:
        raw_attendees = record.get("attendees") or []
        attendees = tuple(
            Attendee(
                name=_to_text(raw.get("name")),
                email=_to_text(raw.get("email")),
                user_id=_to_text(raw.get("user_id")),
            )
            for raw in raw_attendees
            if isinstance(raw, Mapping)
        )
        return cls(
            id=str(record.get("_id") or record.get("id")),
            title=_to_text(record.get("title")) or "",
            scheduled_at=_to_aware_datetime(record.get("scheduled_at")),
            end_at=_to_aware_datetime(record.get("end_at")),
            provider=_to_text(record.get("provider")),
            provider_event_id=_to_text(record.get("provider_event_id")),
            provider_mailbox=_to_text(record.get("provider_mailbox")),
            host_identity=_to_text(record.get("host_identity")),
            online_join_url=_to_text(record.get("online_join_url")),
            attendees=attendees,
        )


class MeetingStore(ABC):
    """Read access to meetings owned by the meetings subsystem."""

    @abstractmethod
    def get_meeting(self, meeting_id: str) -> Meeting | None:
        raise NotImplementedError

    @abstractmethod
    def set_online_join_url(self, meeting_id: str, join_url: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def find_by_provider_event_id(self, provider: str, event_ids: Iterable[str]) -> Meeting | None:
        raise NotImplementedError

    @abstractmethod
    def find_latest_in_completion_window(
        self,
        provider: str,
        *,
        ended_after: datetime,
    ) -> Meeting | None:
        raise NotImplementedError


class InMemoryMeetingStore(MeetingStore):
    def __init__(self, meetings: Iterable[Meeting] = ()) -> None:
        self._lock = threading.Lock()
        self._meetings: dict[str, Meeting] = {meeting.id: meeting for meeting in meetings}

    def save(self, meeting: Meeting) -> None:
        with self._lock:
            self._meetings[meeting.id] = meeting

    def get_meeting(self, meeting_id: str) -> Meeting | None:
        return self._meetings.get(meeting_id)

    def set_online_join_url(self, meeting_id: str, join_url: str) -> bool:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            if not meeting:
                return False
            self._meetings[meeting_id] = replace(meeting, online_join_url=join_url)
            return True

    def find_by_provider_event_id(self, provider: str, event_ids: Iterable[str]) -> Meeting | None:
        candidates = {event_id for event_id in event_ids if event_id}
        if not candidates:
            return None
        for meeting in self._meetings.values():
            if normalize_provider(meeting.provider) == provider and meeting.provider_event_id in candidates:
                return meeting
        return None

    def find_latest_in_completion_window(
        self,
        provider: str,
        *,
        ended_after: datetime,
    ) -> Meeting | None:
        matches = [
            meeting
            for meeting in self._meetings.values()
            if normalize_provider(meeting.provider) == provider
            and meeting.scheduled_at is not None
            and (meeting.effective_end() or meeting.scheduled_at) > ended_after
        ]
        if not matches:
            return None
        return max(matches, key=lambda meeting: meeting.scheduled_at)


class MongoMeetingStore(MeetingStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import DESCENDING, MongoClient

        self._desc = DESCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("provider", 1), ("provider_event_id", 1)])
        self._collection.create_index([("provider", 1), ("scheduled_at", self._desc)])

    def get_meeting(self, meeting_id: str) -> Meeting | None:
        record = self._collection.find_one({"_id": meeting_id})
        return Meeting.from_record(record) if record else None

    def set_online_join_url(self, meeting_id: str, join_url: str) -> bool:
        result = self._collection.update_one(
            {"_id": meeting_id},
            {"$set": {"online_join_url": join_url}},
        )
        return bool(result.matched_count)

    def find_by_provider_event_id(self, provider: str, event_ids: Iterable[str]) -> Meeting | None:
        candidates = [event_id for event_id in event_ids if event_id]
        if not candidates:
            return None
        record = self._collection.find_one(
            {"provider": provider_tag_filter(provider), "provider_event_id": {"$in": candidates}},
        )
        return Meeting.from_record(record) if record else None

    def find_latest_in_completion_window(
        self,
        provider: str,
        *,
        ended_after: datetime,
    ) -> Meeting | None:
        # Meetings without end_at are assumed to last the default duration.
        cursor = self._collection.find(
            {
                "provider": provider_tag_filter(provider),
                "$or": [
                    {"end_at": {"$gt": ended_after}},
                    {
                        "end_at": None,
                        "scheduled_at": {"$gt": ended_after - DEFAULT_MEETING_DURATION},
                    },
                ],
            },
        ).sort("scheduled_at", self._desc).limit(1)
        for record in cursor:
            return Meeting.from_record(record)
        return None


def create_meeting_store(settings: Settings) -> MeetingStore:
    return _create_meeting_store_cached(
        store_name=settings.meetings_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_meetings_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    if store_name == "mongodb":
        return MongoMeetingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryMeetingStore()


def clear_meeting_store_cache() -> None:
    _create_meeting_store_cached.cache_clear()


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _to_aware_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None
