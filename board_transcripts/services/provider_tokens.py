from __future__ import annotations

import base64
import http.client
import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any
from urllib import error, parse, request

from board_transcripts.core.config import Settings
from board_transcripts.services.ingestion_errors import AuthFailure

_GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
REFRESH_MARGIN = timedelta(minutes=2)


@dataclass
class CachedToken:
    access_token: str
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at - REFRESH_MARGIN


class ProviderTokenSupplier(ABC):
    """Caches a provider bearer token and re-acquires it near expiry.

    The supplier itself is not thread-safe. Callers sharing one instance across
    threads pass ``refresh_lock`` so only one refresh runs at a time.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        refresh_lock: threading.Lock | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._refresh_lock = refresh_lock
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cached: CachedToken | None = None

    def get_token(self) -> str:
        cached = self._cached
        if cached and cached.is_fresh(self._clock()):
            return cached.access_token
        if self._refresh_lock is None:
            return self._refresh()
        with self._refresh_lock:
            cached = self._cached
            if cached and cached.is_fresh(self._clock()):
                return cached.access_token
            return self._refresh()

    def invalidate(self) -> None:
        self._cached = None

    def _refresh(self) -> str:
        payload = self._exchange_credentials()
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthFailure(f"{self.provider_label} token response did not include access_token.")
        expires_in = _to_positive_int(payload.get("expires_in")) or 3600
        self._cached = CachedToken(
            access_token=access_token.strip(),
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )
        return self._cached.access_token

    @property
    @abstractmethod
    def provider_label(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def _exchange_credentials(self) -> dict[str, Any]:
        raise NotImplementedError

    def _post_token_request(
        self,
        url: str,
        *,
        body: bytes | None,
        headers: dict[str, str],
    ) -> dict[str, Any]:
        req = request.Request(url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise AuthFailure(f"{self.provider_label} token request timed out.") from exc
        except error.HTTPError as exc:
            body_text = exc.read().decode("utf-8", errors="ignore")
            raise AuthFailure(
                f"{self.provider_label} token request HTTP {exc.code}: {body_text or 'empty response body'}",
            ) from exc
        except error.URLError as exc:
            raise AuthFailure(
                f"{self.provider_label} token request connection error: {exc.reason}",
            ) from exc
        except http.client.HTTPException as exc:
            raise AuthFailure(
                f"{self.provider_label} token response was interrupted: {exc!r}",
            ) from exc

        try:
            payload = json.loads(response_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise AuthFailure(f"{self.provider_label} token endpoint returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise AuthFailure(f"{self.provider_label} token response is not a JSON object.")
        return payload


class GraphTokenSupplier(ProviderTokenSupplier):
    """Microsoft identity platform client-credentials flow for Graph app access."""

    provider_label = "Microsoft Graph"

    def __init__(
        self,
        *,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        token_url_template: str = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.tenant_id = tenant_id.strip()
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.token_url_template = token_url_template

    def _exchange_credentials(self) -> dict[str, Any]:
        if not (self.tenant_id and self.client_id and self.client_secret):
            raise AuthFailure(
                "Microsoft Graph credentials are not configured. "
                "Set GRAPH_TENANT_ID, GRAPH_CLIENT_ID and GRAPH_CLIENT_SECRET.",
            )
        body = parse.urlencode(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
                "scope": _GRAPH_DEFAULT_SCOPE,
            },
        ).encode("utf-8")
        return self._post_token_request(
            self.token_url_template.format(tenant_id=self.tenant_id),
            body=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )


class ZoomTokenSupplier(ProviderTokenSupplier):
    """Zoom server-to-server OAuth (account credentials grant)."""

    provider_label = "Zoom"

    def __init__(
        self,
        *,
        account_id: str,
        client_id: str,
        client_secret: str,
        token_url: str = "https://zoom.us/oauth/token",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.account_id = account_id.strip()
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.token_url = token_url

    def _exchange_credentials(self) -> dict[str, Any]:
        if not (self.account_id and self.client_id and self.client_secret):
            raise AuthFailure(
                "Zoom credentials are not configured. "
                "Set ZOOM_ACCOUNT_ID, ZOOM_CLIENT_ID and ZOOM_CLIENT_SECRET.",
            )
        query = parse.urlencode(
            {"grant_type": "account_credentials", "account_id": self.account_id},
        )
        basic = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode("ascii")
        return self._post_token_request(
            f"{self.token_url}?{query}",
            body=b"",
            headers={"Authorization": f"Basic {basic}"},
        )


def _to_positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def create_graph_token_supplier(settings: Settings) -> GraphTokenSupplier:
    return _create_graph_token_supplier_cached(
        tenant_id=settings.graph_tenant_id,
        client_id=settings.graph_client_id,
        client_secret=settings.graph_client_secret,
        token_url_template=settings.graph_token_url_template,
        timeout_seconds=settings.graph_api_timeout_seconds,
    )


def create_zoom_token_supplier(settings: Settings) -> ZoomTokenSupplier:
    return _create_zoom_token_supplier_cached(
        account_id=settings.zoom_account_id,
        client_id=settings.zoom_client_id,
        client_secret=settings.zoom_client_secret,
        token_url=settings.zoom_token_url,
        timeout_seconds=settings.zoom_api_timeout_seconds,
    )


@lru_cache
def _create_graph_token_supplier_cached(
    tenant_id: str,
    client_id: str,
    client_secret: str,
    token_url_template: str,
    timeout_seconds: float,
) -> GraphTokenSupplier:
    return GraphTokenSupplier(
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=client_secret,
        token_url_template=token_url_template,
        timeout_seconds=timeout_seconds,
        refresh_lock=threading.Lock(),
    )


@lru_cache
def _create_zoom_token_supplier_cached(
    account_id: str,
    client_id: str,
    client_secret: str,
    token_url: str,
    timeout_seconds: float,
) -> ZoomTokenSupplier:
    return ZoomTokenSupplier(
        account_id=account_id,
        client_id=client_id,
        client_secret=client_secret,
        token_url=token_url,
        timeout_seconds=timeout_seconds,
        refresh_lock=threading.Lock(),
    )


def clear_token_supplier_cache() -> None:
    _create_graph_token_supplier_cached.cache_clear()
    _create_zoom_token_supplier_cached.cache_clear()
