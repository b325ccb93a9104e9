from __future__ import annotations

import http.client
import json
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib import error, request

from board_transcripts.services.ingestion_errors import IngestionCancelledError

_ABORTED_CONNECTION_ERRORS = (
    ConnectionAbortedError,
    ConnectionResetError,
    BrokenPipeError,
)


@dataclass(frozen=True)
class GraphErrorInfo:
    code: str | None = None
    message: str | None = None
    inner_codes: tuple[str, ...] = ()
    inner_details: tuple[str, ...] = ()

    @classmethod
    def parse(cls, body: str) -> GraphErrorInfo:
        payload = _load_json_object(body)
        error_payload = payload.get("error") if payload else None
        if not isinstance(error_payload, Mapping):
            return cls()

        inner_codes: list[str] = []
        inner_details: list[str] = []
        inner = error_payload.get("innerError") or error_payload.get("innererror")
        while isinstance(inner, Mapping):
            for key, value in inner.items():
                if key in {"innerError", "innererror"}:
                    continue
                if key == "code" and isinstance(value, str) and value.strip():
                    inner_codes.append(value.strip())
                elif isinstance(value, str | int | float | bool) and str(value).strip():
                    inner_details.append(f"{key}: {value}")
            inner = inner.get("innerError") or inner.get("innererror")

        return cls(
            code=_clean_text(error_payload.get("code")),
            message=_clean_text(error_payload.get("message")),
            inner_codes=tuple(inner_codes),
            inner_details=tuple(inner_details),
        )

    @property
    def codes(self) -> tuple[str, ...]:
        if self.code:
            return (self.code, *self.inner_codes)
        return self.inner_codes

    def summary(self) -> str | None:
        parts: list[str] = []
        if self.code and self.message:
            parts.append(f"{self.code}: {self.message}")
        elif self.code or self.message:
            parts.append(self.code or self.message or "")
        if self.inner_details:
            parts.append("InnerError => " + ", ".join(self.inner_details))
        return "; ".join(parts) or None


@dataclass(frozen=True)
class ZoomErrorInfo:
    code: str | None = None
    message: str | None = None

    @classmethod
    def parse(cls, body: str) -> ZoomErrorInfo:
        payload = _load_json_object(body)
        if not payload:
            return cls()
        raw_code = payload.get("code")
        return cls(
            code=str(raw_code) if raw_code is not None else None,
            message=_clean_text(payload.get("message")),
        )

    def summary(self) -> str | None:
        if not self.code and not self.message:
            return None
        return f"code={self.code or ''}, message={self.message or ''}"


class ProviderHttpError(Exception):
    def __init__(
        self,
        *,
        provider: str,
        status_code: int,
        body: str,
        url: str,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.url = url
        self.graph_error = GraphErrorInfo.parse(body) if provider == "graph" else GraphErrorInfo()
        self.zoom_error = ZoomErrorInfo.parse(body) if provider == "zoom" else ZoomErrorInfo()
        super().__init__(f"{provider} API HTTP {status_code}: {self.detail()}")

    @property
    def error_codes(self) -> tuple[str, ...]:
        if self.provider == "zoom":
            return (self.zoom_error.code,) if self.zoom_error.code else ()
        return self.graph_error.codes

    def detail(self) -> str:
        summary = self.zoom_error.summary() if self.provider == "zoom" else self.graph_error.summary()
        if summary:
            return summary
        if not self.body:
            return "empty response body"
        if len(self.body) > 256:
            return self.body[:256] + "..."
        return self.body


class TransportError(Exception):
    def __init__(self, message: str, *, timed_out: bool = False, aborted: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out
        self.aborted = aborted

    @property
    def is_transient(self) -> bool:
        return self.timed_out or self.aborted


@dataclass
class HttpResponse:
    status_code: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    def text(self) -> str:
        return self.body.decode("utf-8-sig", errors="replace")

    def json(self) -> dict[str, Any]:
        if not self.body.strip():
            return {}
        try:
            parsed = json.loads(self.body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise TransportError("Provider API returned invalid JSON.") from exc
        if not isinstance(parsed, dict):
            raise TransportError("Provider API response is not a JSON object.")
        return parsed


@dataclass(frozen=True)
class FetchedTranscript:
    provider_transcript_id: str
    content: str
    join_url: str | None = None


class ProviderHttpClient:
    """Thin urllib wrapper that turns transport failures into typed errors."""

    def __init__(self, *, provider: str, timeout_seconds: float = 30.0) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
        cancel_event: threading.Event | None = None,
    ) -> HttpResponse:
        raise_if_cancelled(cancel_event)
        req = request.Request(url, data=data, method=method, headers=dict(headers or {}))
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
                status_code = getattr(response, "status", 200)
                response_headers = dict(getattr(response, "headers", {}) or {})
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise ProviderHttpError(
                provider=self.provider,
                status_code=exc.code,
                body=body,
                url=url,
            ) from exc
        except error.URLError as exc:
            reason = exc.reason
            raise TransportError(
                f"{self.provider} API connection error: {reason}",
                timed_out=isinstance(reason, TimeoutError),
                aborted=isinstance(reason, _ABORTED_CONNECTION_ERRORS),
            ) from exc
        except TimeoutError as exc:
            raise TransportError(f"{self.provider} API request timed out.", timed_out=True) from exc
        except _ABORTED_CONNECTION_ERRORS as exc:
            raise TransportError(
                f"{self.provider} API connection aborted: {exc}",
                aborted=True,
            ) from exc
        except http.client.HTTPException as exc:
            raise TransportError(
                f"{self.provider} API response was interrupted: {exc!r}",
                aborted=True,
            ) from exc
        raise_if_cancelled(cancel_event)
        return HttpResponse(status_code=status_code, body=response_body, headers=response_headers)

    def get_json(
        self,
        url: str,
        *,
        token: str,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, Any]:
        response = self.send(
            "GET",
            url,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            cancel_event=cancel_event,
        )
        return response.json()


def raise_if_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise IngestionCancelledError("Transcript ingestion was cancelled.")


def _load_json_object(body: str) -> dict[str, Any] | None:
    if not body or not body.strip():
        return None
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None
