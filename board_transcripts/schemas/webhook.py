from pydantic import BaseModel, Field


class WebhookAcceptedResponse(BaseModel):
    status: str = "accepted"
    scheduled_meeting_ids: list[str] = Field(default_factory=list)


class ZoomUrlValidationResponse(BaseModel):
    plainToken: str
    encryptedToken: str
