from fastapi import APIRouter

from board_transcripts.api.routes.health import router as health_router
from board_transcripts.api.routes.integrations import router as integrations_router
from board_transcripts.api.routes.transcripts import router as transcripts_router
from board_transcripts.api.routes.webhooks import router as webhooks_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)

# Unversioned routes registered as provider webhook targets.
api_router.include_router(transcripts_router)
api_router.include_router(webhooks_router)
api_router.include_router(integrations_router)

# Versioned routes for long-term API evolution.
v1_router.include_router(transcripts_router)
v1_router.include_router(webhooks_router)
v1_router.include_router(integrations_router)
api_router.include_router(v1_router)
