from datetime import UTC, datetime

from board_transcripts.core.config import Settings
from board_transcripts.schemas.health import HealthResponse


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        return HealthResponse(
            status="ok",
            service=self.settings.app_name,
            environment=self.settings.app_env,
            graph_configured=self.settings.has_graph_credentials(),
            zoom_configured=self.settings.has_zoom_credentials(),
            timestamp=datetime.now(UTC),
        )
