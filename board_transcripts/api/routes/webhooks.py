import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from board_transcripts.core.config import get_settings
from board_transcripts.schemas.webhook import WebhookAcceptedResponse, ZoomUrlValidationResponse
from board_transcripts.services.webhook_service import WebhookService, run_transcript_ingestion

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.get("/msgraph/events", response_class=PlainTextResponse)
def validate_graph_subscription(request: Request) -> PlainTextResponse:
    validation_token = request.query_params.get("validationToken")
    if not validation_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="validationToken query parameter is required.",
        )
    logger.info("Graph subscription validation path=%s", str(request.url.path))
    return PlainTextResponse(content=validation_token, media_type="text/plain")


@router.post(
    "/msgraph/events",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_graph_notifications(
    request: Request,
    background_tasks: BackgroundTasks,
) -> WebhookAcceptedResponse | PlainTextResponse:
    # Graph sends the validation handshake as a POST on some subscription types.
    validation_token = request.query_params.get("validationToken")
    if validation_token:
        return PlainTextResponse(content=validation_token, media_type="text/plain")

    raw_body = await request.body()
    logger.info(
        "Webhook received provider=msgraph path=%s length=%s",
        str(request.url.path),
        len(raw_body),
    )
    service = WebhookService(get_settings())
    meeting_ids = service.resolve_graph_notifications(raw_body)
    for meeting_id in meeting_ids:
        background_tasks.add_task(run_transcript_ingestion, meeting_id, "msgraph")

    logger.info(
        "Webhook processed provider=msgraph path=%s scheduled=%s",
        str(request.url.path),
        len(meeting_ids),
    )
    return WebhookAcceptedResponse(scheduled_meeting_ids=meeting_ids)


@router.post(
    "/zoom/events",
    response_model=WebhookAcceptedResponse | ZoomUrlValidationResponse,
)
async def receive_zoom_event(
    request: Request,
    background_tasks: BackgroundTasks,
) -> WebhookAcceptedResponse | ZoomUrlValidationResponse:
    raw_body = await request.body()
    timestamp = request.headers.get("x-zm-request-timestamp")
    signature = request.headers.get("x-zm-signature")
    logger.info(
        "Webhook received provider=zoom path=%s length=%s has_signature=%s",
        str(request.url.path),
        len(raw_body),
        bool(signature),
    )

    service = WebhookService(get_settings())
    try:
        outcome = service.handle_zoom_event(raw_body, timestamp=timestamp, signature=signature)
    except HTTPException as exc:
        logger.warning(
            "Webhook rejected provider=zoom path=%s status_code=%s detail=%s",
            str(request.url.path),
            exc.status_code,
            exc.detail,
        )
        raise

    if outcome.challenge_response is not None:
        return ZoomUrlValidationResponse(**outcome.challenge_response)

    scheduled: list[str] = []
    if outcome.meeting_id:
        background_tasks.add_task(run_transcript_ingestion, outcome.meeting_id, "zoom")
        scheduled.append(outcome.meeting_id)
    return WebhookAcceptedResponse(scheduled_meeting_ids=scheduled)
