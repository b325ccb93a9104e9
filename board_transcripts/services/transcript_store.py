from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any

from board_transcripts.core.config import Settings


@dataclass(frozen=True)
class Utterance:
    start: timedelta
    end: timedelta
    text: str
    speaker_name: str | None = None
    speaker_email: str | None = None
    user_id: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "start_ms": _to_milliseconds(self.start),
            "end_ms": _to_milliseconds(self.end),
            "text": self.text,
            "speaker_name": self.speaker_name,
            "speaker_email": self.speaker_email,
            "user_id": self.user_id,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Utterance:
        return cls(
            start=timedelta(milliseconds=int(record.get("start_ms") or 0)),
            end=timedelta(milliseconds=int(record.get("end_ms") or 0)),
            text=str(record.get("text") or ""),
            speaker_name=record.get("speaker_name"),
            speaker_email=record.get("speaker_email"),
            user_id=record.get("user_id"),
        )


@dataclass(frozen=True)
class TranscriptRecord:
    id: str
    meeting_id: str
    provider: str
    provider_transcript_id: str
    created_at: datetime
    updated_at: datetime
    utterances: tuple[Utterance, ...] = field(default_factory=tuple)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> TranscriptRecord:
        utterances = [
            Utterance.from_record(raw)
            for raw in record.get("utterances") or []
            if isinstance(raw, Mapping)
        ]
        created_at = _to_aware_datetime(record.get("created_at"))
        return cls(
            id=str(record.get("_id")),
            meeting_id=str(record.get("meeting_id")),
            provider=str(record.get("provider")),
            provider_transcript_id=str(record.get("provider_transcript_id") or ""),
            created_at=created_at,
            updated_at=_to_aware_datetime(record.get("updated_at") or created_at),
            utterances=tuple(sorted(utterances, key=lambda utterance: utterance.start)),
        )


class TranscriptStore(ABC):
    @abstractmethod
    def upsert(
        self,
        meeting_id: str,
        provider: str,
        provider_transcript_id: str,
        utterances: Sequence[Utterance],
    ) -> int:
        """Create or replace the (meeting, provider) transcript in one write."""
        raise NotImplementedError

    @abstractmethod
    def get_latest_by_meeting_id(self, meeting_id: str) -> TranscriptRecord | None:
        raise NotImplementedError


class InMemoryTranscriptStore(TranscriptStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], dict[str, Any]] = {}

    def upsert(
        self,
        meeting_id: str,
        provider: str,
        provider_transcript_id: str,
        utterances: Sequence[Utterance],
    ) -> int:
        now = datetime.now(UTC)
        utterance_records = [utterance.to_record() for utterance in utterances]
        with self._lock:
            existing = self._records.get((meeting_id, provider))
            self._records[(meeting_id, provider)] = {
                "_id": existing["_id"] if existing else f"memory-{uuid.uuid4().hex}",
                "meeting_id": meeting_id,
                "provider": provider,
                "provider_transcript_id": provider_transcript_id,
                "created_at": existing["created_at"] if existing else now,
                "updated_at": now,
                "utterances": utterance_records,
            }
        return len(utterance_records)

    def get_latest_by_meeting_id(self, meeting_id: str) -> TranscriptRecord | None:
        with self._lock:
            matches = [
                record for (record_meeting_id, _), record in self._records.items() if record_meeting_id == meeting_id
            ]
        if not matches:
            return None
        latest = max(matches, key=lambda record: record["updated_at"])
        return TranscriptRecord.from_record(latest)

    def count(self) -> int:
        return len(self._records)


class MongoTranscriptStore(TranscriptStore):
    """One document per (meeting, provider) with embedded utterances.

    Replacing the embedded array is a single-document write, which MongoDB
    applies atomically.
    """

    def __init__(
        self,
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
        self._collection.create_index(
            [("meeting_id", 1), ("provider", 1)],
            unique=True,
        )
        self._collection.create_index([("meeting_id", 1), ("updated_at", self._desc)])

    def upsert(
        self,
        meeting_id: str,
        provider: str,
        provider_transcript_id: str,
        utterances: Sequence[Utterance],
    ) -> int:
        from pymongo.errors import DuplicateKeyError

        utterance_records = [utterance.to_record() for utterance in utterances]
        try:
            self._write(meeting_id, provider, provider_transcript_id, utterance_records)
        except DuplicateKeyError:
            # A concurrent first ingestion inserted the row; this write now updates it.
            self._write(meeting_id, provider, provider_transcript_id, utterance_records)
        return len(utterance_records)

    def get_latest_by_meeting_id(self, meeting_id: str) -> TranscriptRecord | None:
        record = self._collection.find_one(
            {"meeting_id": meeting_id},
            sort=[("updated_at", self._desc)],
        )
        return TranscriptRecord.from_record(record) if record else None

    def _write(
        self,
        meeting_id: str,
        provider: str,
        provider_transcript_id: str,
        utterance_records: list[dict[str, Any]],
    ) -> None:
        from pymongo import ReturnDocument

        now = datetime.now(UTC)
        self._collection.find_one_and_update(
            {"meeting_id": meeting_id, "provider": provider},
            {
                "$set": {
                    "provider_transcript_id": provider_transcript_id,
                    "updated_at": now,
                    "utterances": utterance_records,
                },
                "$setOnInsert": {
                    "_id": uuid.uuid4().hex,
                    "created_at": now,
                },
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )


def create_transcript_store(settings: Settings) -> TranscriptStore:
    return _create_transcript_store_cached(
        store_name=settings.transcripts_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_transcripts_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_transcript_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> TranscriptStore:
    if store_name == "memory":
        return InMemoryTranscriptStore()

    if store_name == "mongodb":
        return MongoTranscriptStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryTranscriptStore()


def clear_transcript_store_cache() -> None:
    _create_transcript_store_cached.cache_clear()


def _to_milliseconds(value: timedelta) -> int:
    return int(round(value.total_seconds() * 1000))


def _to_aware_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    return datetime.now(UTC)
