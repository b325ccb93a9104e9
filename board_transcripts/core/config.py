from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Board Transcript Ingestion API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    app_base_url: str = ""
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    meetings_store: str = "mongodb"
    transcripts_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "board_management"
    mongodb_meetings_collection: str = "meetings"
    mongodb_transcripts_collection: str = "transcripts"
    mongodb_connect_timeout_ms: int = 2000
    graph_tenant_id: str = ""
    graph_client_id: str = ""
    graph_client_secret: str = ""
    graph_mailbox_address: str = ""
    graph_webhook_client_state: str = ""
    graph_webhook_notification_url: str = ""
    graph_subscription_lifetime_minutes: int = 55
    graph_api_base_url: str = "https://graph.microsoft.com/v1.0"
    graph_beta_api_base_url: str = "https://graph.microsoft.com/beta"
    graph_token_url_template: str = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
    graph_api_timeout_seconds: float = 30.0
    zoom_account_id: str = ""
    zoom_client_id: str = ""
    zoom_client_secret: str = ""
    zoom_webhook_secret_token: str = ""
    zoom_disable_signature_validation: bool = False
    zoom_api_base_url: str = "https://api.zoom.us/v2"
    zoom_token_url: str = "https://zoom.us/oauth/token"
    zoom_api_timeout_seconds: float = 30.0
    email_delivery: str = "graph"
    notifications_enabled: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("meetings_store", "transcripts_store", "email_delivery", mode="before")
    @classmethod
    def normalize_backend_name(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("graph_api_timeout_seconds", "zoom_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_api_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 30.0
        return parsed_value

    @field_validator("graph_webhook_notification_url", mode="before")
    @classmethod
    def strip_notification_url(cls, value: str) -> str:
        return value.strip() if isinstance(value, str) else value

    @field_validator("mongodb_connect_timeout_ms", mode="before")
    @classmethod
    def normalize_mongodb_timeout(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 2000
        return parsed_value

    @field_validator("graph_api_base_url", "graph_beta_api_base_url", "zoom_api_base_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def has_graph_credentials(self) -> bool:
        return bool(self.graph_tenant_id and self.graph_client_id and self.graph_client_secret)

    def has_zoom_credentials(self) -> bool:
        return bool(self.zoom_account_id and self.zoom_client_id and self.zoom_client_secret)


@lru_cache
def get_settings() -> Settings:
    return Settings()
