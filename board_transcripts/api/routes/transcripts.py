import logging

from fastapi import APIRouter, HTTPException, status

from board_transcripts.core.config import get_settings
from board_transcripts.schemas.transcript import (
    IngestTranscriptResponse,
    MeetingProvider,
    TranscriptResponse,
    TranscriptUtteranceResponse,
)
from board_transcripts.services.ingestion_errors import (
    AuthFailure,
    ConfigurationError,
    IngestionCancelledError,
    NotFoundError,
    NotReadyError,
    ProviderRequestError,
    TranscriptIngestionError,
    UnsupportedProviderError,
)
from board_transcripts.services.subtitle_parser import format_timestamp
from board_transcripts.services.transcript_ingestion_service import TranscriptIngestionService
from board_transcripts.services.transcript_store import TranscriptRecord

router = APIRouter(prefix="/meetings", tags=["transcripts"])
logger = logging.getLogger(__name__)

_ERROR_STATUS_CODES: tuple[tuple[type[TranscriptIngestionError], int], ...] = (
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (UnsupportedProviderError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (NotReadyError, status.HTTP_409_CONFLICT),
    (AuthFailure, status.HTTP_502_BAD_GATEWAY),
    (ProviderRequestError, status.HTTP_502_BAD_GATEWAY),
    (IngestionCancelledError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@router.post(
    "/{meeting_id}/transcript/ingest",
    response_model=IngestTranscriptResponse,
)
def ingest_meeting_transcript(meeting_id: str) -> IngestTranscriptResponse:
    settings = get_settings()
    logger.info("Manual transcript ingestion requested meeting_id=%s", meeting_id)
    try:
        service = TranscriptIngestionService(settings)
        utterance_count = service.ingest(meeting_id)
    except TranscriptIngestionError as exc:
        http_exc = to_http_exception(exc)
        logger.warning(
            "Manual transcript ingestion rejected meeting_id=%s status_code=%s detail=%s",
            meeting_id,
            http_exc.status_code,
            http_exc.detail,
        )
        raise http_exc from exc
    except Exception as exc:
        logger.exception("Manual transcript ingestion failed meeting_id=%s", meeting_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to ingest transcript.",
        ) from exc

    return IngestTranscriptResponse(meeting_id=meeting_id, utterance_count=utterance_count)


@router.get(
    "/{meeting_id}/transcript",
    response_model=TranscriptResponse,
)
def get_meeting_transcript(meeting_id: str) -> TranscriptResponse:
    settings = get_settings()
    try:
        service = TranscriptIngestionService(settings)
        record = service.get_transcript(meeting_id)
    except TranscriptIngestionError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to query transcript storage.",
        ) from exc
    return map_transcript_record(record)


def to_http_exception(exc: TranscriptIngestionError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def map_transcript_record(record: TranscriptRecord) -> TranscriptResponse:
    return TranscriptResponse(
        id=record.id,
        meeting_id=record.meeting_id,
        provider=MeetingProvider(record.provider),
        provider_transcript_id=record.provider_transcript_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
        utterances=[
            TranscriptUtteranceResponse(
                start=format_timestamp(utterance.start),
                end=format_timestamp(utterance.end),
                text=utterance.text,
                speaker_name=utterance.speaker_name,
                speaker_email=utterance.speaker_email,
                user_id=utterance.user_id,
            )
            for utterance in record.utterances
        ],
    )
