from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib import parse

from board_transcripts.core.config import Settings
from board_transcripts.services.ingestion_errors import ConfigurationError, ProviderRequestError
from board_transcripts.services.provider_http import (
    ProviderHttpClient,
    ProviderHttpError,
    TransportError,
)
from board_transcripts.services.provider_tokens import ProviderTokenSupplier, create_graph_token_supplier

logger = logging.getLogger(__name__)

MIN_SUBSCRIPTION_LIFETIME = timedelta(minutes=5)
# Graph caps onlineMeeting subscriptions at one day.
MAX_SUBSCRIPTION_LIFETIME = timedelta(hours=23)
DEFAULT_SUBSCRIPTION_LIFETIME = timedelta(minutes=55)
DEFAULT_START_LOOKBACK = timedelta(hours=12)
TEAMS_TRANSCRIPT_CHANGE_TYPE = "updated"
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


@dataclass(frozen=True)
class GraphSubscription:
    id: str
    resource: str
    change_type: str
    expiration_date_time: datetime | None = None
    client_state: str | None = None


def clamp_subscription_lifetime(lifetime: timedelta | None) -> timedelta:
    resolved = lifetime if lifetime is not None else DEFAULT_SUBSCRIPTION_LIFETIME
    return min(max(resolved, MIN_SUBSCRIPTION_LIFETIME), MAX_SUBSCRIPTION_LIFETIME)


def validate_notification_url(url: str | None) -> str:
    """Return the notification URL when it is an absolute HTTPS URL, otherwise raise."""
    if not url or not url.strip():
        raise ConfigurationError("GRAPH_WEBHOOK_NOTIFICATION_URL is not configured.")
    cleaned = url.strip()
    parsed = parse.urlsplit(cleaned)
    if parsed.scheme.lower() != "https" or not parsed.netloc:
        raise ConfigurationError("Graph webhook notification URL must be an absolute HTTPS URL.")
    return cleaned


def build_online_meetings_resource(start: datetime) -> str:
    return f"/communications/onlineMeetings?$filter=StartDateTime ge {_format_graph_datetime(start)}"


class GraphSubscriptionClient:
    """Creates Microsoft Graph change-notification subscriptions for Teams meetings."""

    def __init__(
        self,
        *,
        token_supplier: ProviderTokenSupplier,
        notification_url: str | None,
        client_state: str | None = None,
        api_base_url: str = "https://graph.microsoft.com/v1.0",
        timeout_seconds: float = 30.0,
        http_client: ProviderHttpClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.token_supplier = token_supplier
        self.notification_url = notification_url
        self.client_state = client_state or None
        self.api_base_url = api_base_url.rstrip("/")
        self.http_client = http_client or ProviderHttpClient(
            provider="graph",
            timeout_seconds=timeout_seconds,
        )
        self._clock = clock or (lambda: datetime.now(UTC))

    def create_teams_transcript_subscription(
        self,
        *,
        start: datetime | None = None,
        lifetime: timedelta | None = None,
    ) -> GraphSubscription:
        notification_url = validate_notification_url(self.notification_url)
        now = self._clock()
        resource = build_online_meetings_resource(start or now - DEFAULT_START_LOOKBACK)
        expiration = now + clamp_subscription_lifetime(lifetime)
        payload: dict[str, Any] = {
            "changeType": TEAMS_TRANSCRIPT_CHANGE_TYPE,
            "notificationUrl": notification_url,
            "resource": resource,
            "expirationDateTime": _format_graph_datetime(expiration),
            "latestSupportedTlsVersion": "v1_2",
        }
        if self.client_state:
            payload["clientState"] = self.client_state

        logger.info(
            "Creating Graph subscription resource=%s expiration=%s",
            resource,
            payload["expirationDateTime"],
        )
        token = self.token_supplier.get_token()
        try:
            response = self.http_client.send(
                "POST",
                f"{self.api_base_url}/subscriptions",
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                data=json.dumps(payload).encode("utf-8"),
            )
            created = response.json()
        except ProviderHttpError as exc:
            if exc.status_code == 401:
                self.token_supplier.invalidate()
            raise ProviderRequestError(
                f"Microsoft Graph subscription creation failed with HTTP {exc.status_code}: {exc.detail()}",
                status_code=exc.status_code,
            ) from exc
        except TransportError as exc:
            raise ProviderRequestError(f"Microsoft Graph could not be reached. Details: {exc}") from exc

        subscription = _parse_subscription(created, fallback_resource=resource, fallback_expiration=expiration)
        logger.info(
            "Created Graph subscription subscription_id=%s expiration=%s",
            subscription.id,
            subscription.expiration_date_time,
        )
        return subscription


def create_graph_subscription_client(settings: Settings) -> GraphSubscriptionClient:
    if not settings.has_graph_credentials():
        raise ConfigurationError(
            "Microsoft Graph credentials are not configured. Set GRAPH_TENANT_ID, GRAPH_CLIENT_ID "
            "and GRAPH_CLIENT_SECRET.",
        )
    return GraphSubscriptionClient(
        token_supplier=create_graph_token_supplier(settings),
        notification_url=settings.graph_webhook_notification_url,
        client_state=settings.graph_webhook_client_state,
        api_base_url=settings.graph_api_base_url,
        timeout_seconds=settings.graph_api_timeout_seconds,
    )


def _parse_subscription(
    payload: Mapping[str, Any],
    *,
    fallback_resource: str,
    fallback_expiration: datetime,
) -> GraphSubscription:
    subscription_id = payload.get("id")
    if not isinstance(subscription_id, str) or not subscription_id.strip():
        raise ProviderRequestError("Microsoft Graph returned a subscription without an identifier.")
    return GraphSubscription(
        id=subscription_id.strip(),
        resource=_text_or(payload.get("resource"), fallback_resource),
        change_type=_text_or(payload.get("changeType"), TEAMS_TRANSCRIPT_CHANGE_TYPE),
        expiration_date_time=_parse_graph_datetime(payload.get("expirationDateTime")) or fallback_expiration,
        client_state=payload.get("clientState") if isinstance(payload.get("clientState"), str) else None,
    )


def _format_graph_datetime(value: datetime) -> str:
    aware = value if value.tzinfo else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_graph_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        # Graph emits up to seven fractional digits, more than fromisoformat accepts.
        trimmed = _EXCESS_FRACTION.sub(r"\1", value.strip().replace("Z", "+00:00"))
        parsed = datetime.fromisoformat(trimmed)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _text_or(value: Any, fallback: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback
