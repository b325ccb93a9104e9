from fastapi import APIRouter

from board_transcripts.core.config import get_settings
from board_transcripts.schemas.health import HealthResponse
from board_transcripts.services.health_service import HealthService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def healthcheck() -> HealthResponse:
    settings = get_settings()
    service = HealthService(settings)
    return service.get_status()
