import logging
from datetime import timedelta

from fastapi import APIRouter, HTTPException, status

from board_transcripts.api.routes.transcripts import to_http_exception
from board_transcripts.core.config import get_settings
from board_transcripts.schemas.integration import (
    GraphSubscriptionResponse,
    TeamsTranscriptSubscriptionRequest,
)
from board_transcripts.services.graph_subscription_client import create_graph_subscription_client
from board_transcripts.services.ingestion_errors import TranscriptIngestionError

router = APIRouter(prefix="/integrations", tags=["integrations"])
logger = logging.getLogger(__name__)


@router.post(
    "/msgraph/subscriptions/teams-transcripts",
    response_model=GraphSubscriptionResponse,
)
def create_teams_transcript_subscription(
    payload: TeamsTranscriptSubscriptionRequest | None = None,
) -> GraphSubscriptionResponse:
    settings = get_settings()
    request_payload = payload or TeamsTranscriptSubscriptionRequest()
    lifetime_minutes = request_payload.lifetime_minutes or settings.graph_subscription_lifetime_minutes
    try:
        client = create_graph_subscription_client(settings)
        subscription = client.create_teams_transcript_subscription(
            start=request_payload.start_from_utc,
            lifetime=timedelta(minutes=lifetime_minutes),
        )
    except TranscriptIngestionError as exc:
        http_exc = to_http_exception(exc)
        logger.warning(
            "Graph subscription creation rejected status_code=%s detail=%s",
            http_exc.status_code,
            http_exc.detail,
        )
        raise http_exc from exc
    except Exception as exc:
        logger.exception("Graph subscription creation failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to create Microsoft Graph subscription.",
        ) from exc

    return GraphSubscriptionResponse(
        id=subscription.id,
        resource=subscription.resource,
        change_type=subscription.change_type,
        expiration_date_time=subscription.expiration_date_time,
        client_state=subscription.client_state,
    )
