from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class MeetingProvider(StrEnum):
    microsoft365 = "Microsoft365"
    zoom = "Zoom"


class IngestTranscriptResponse(BaseModel):
    meeting_id: str
    utterance_count: int


class TranscriptUtteranceResponse(BaseModel):
    start: str = Field(description="Offset from meeting start as hh:mm:ss.fff")
    end: str
    text: str
    speaker_name: str | None = None
    speaker_email: str | None = None
    user_id: str | None = None


class TranscriptResponse(BaseModel):
    id: str
    meeting_id: str
    provider: MeetingProvider
    provider_transcript_id: str
    created_at: datetime
    updated_at: datetime
    utterances: list[TranscriptUtteranceResponse] = Field(default_factory=list)
