from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    environment: str
    graph_configured: bool
    zoom_configured: bool
    timestamp: datetime
