from datetime import datetime

from pydantic import BaseModel, Field


class TeamsTranscriptSubscriptionRequest(BaseModel):
    start_from_utc: datetime | None = Field(
        default=None,
        description="Only meetings starting at or after this instant are watched. Defaults to 12 hours ago.",
    )
    lifetime_minutes: int | None = Field(
        default=None,
        gt=0,
        description="Requested lifetime, clamped to the 5 minute to 23 hour range Graph accepts.",
    )


class GraphSubscriptionResponse(BaseModel):
    id: str
    resource: str
    change_type: str
    expiration_date_time: datetime | None = None
    client_state: str | None = None
