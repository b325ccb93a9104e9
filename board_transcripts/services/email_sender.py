from __future__ import annotations

import base64
import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache
from urllib import parse

from board_transcripts.core.config import Settings
from board_transcripts.services.ingestion_errors import DeliveryError, TranscriptIngestionError
from board_transcripts.services.provider_http import (
    ProviderHttpClient,
    ProviderHttpError,
    TransportError,
)
from board_transcripts.services.provider_tokens import ProviderTokenSupplier


@dataclass(frozen=True)
class EmailAttachment:
    file_name: str
    content_type: str
    content: bytes


@dataclass(frozen=True)
class SentEmail:
    from_address: str
    recipients: tuple[str, ...]
    subject: str
    html_body: str
    attachment: EmailAttachment | None = None


class EmailSender(ABC):
    @abstractmethod
    def send(
        self,
        from_address: str,
        recipients: Iterable[str],
        subject: str,
        html_body: str,
        attachment: EmailAttachment | None = None,
    ) -> None:
        raise NotImplementedError


def distinct_recipients(recipients: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    distinct: list[str] = []
    for recipient in recipients:
        cleaned = (recipient or "").strip()
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        distinct.append(cleaned)
    return distinct


class GraphEmailSender(EmailSender):
    """Sends HTML mail through Microsoft Graph ``sendMail``.

    The app registration needs the Mail.Send application permission and the
    right to send as ``from_address``.
    """

    def __init__(
        self,
        *,
        token_supplier: ProviderTokenSupplier,
        api_base_url: str = "https://graph.microsoft.com/v1.0",
        timeout_seconds: float = 30.0,
        http_client: ProviderHttpClient | None = None,
    ) -> None:
        self.token_supplier = token_supplier
        self.api_base_url = api_base_url.rstrip("/")
        self.http_client = http_client or ProviderHttpClient(
            provider="graph",
            timeout_seconds=timeout_seconds,
        )

    def send(
        self,
        from_address: str,
        recipients: Iterable[str],
        subject: str,
        html_body: str,
        attachment: EmailAttachment | None = None,
    ) -> None:
        to_addresses = distinct_recipients(recipients)
        if not to_addresses:
            return

        message: dict[str, object] = {
            "subject": subject,
            "body": {"contentType": "HTML", "content": html_body},
            "toRecipients": [{"emailAddress": {"address": address}} for address in to_addresses],
        }
        if attachment is not None:
            message["attachments"] = [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": attachment.file_name,
                    "contentType": attachment.content_type,
                    "contentBytes": base64.b64encode(attachment.content).decode("ascii"),
                },
            ]

        url = f"{self.api_base_url}/users/{parse.quote(from_address.strip(), safe='')}/sendMail"
        body = json.dumps({"message": message, "saveToSentItems": True}).encode("utf-8")
        try:
            token = self.token_supplier.get_token()
            self.http_client.send(
                "POST",
                url,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                data=body,
            )
        except ProviderHttpError as exc:
            raise DeliveryError(f"Microsoft Graph sendMail failed with HTTP {exc.status_code}: {exc.detail()}") from exc
        except TransportError as exc:
            raise DeliveryError(f"Microsoft Graph sendMail could not be reached: {exc}") from exc
        except TranscriptIngestionError as exc:
            raise DeliveryError(f"Microsoft Graph sendMail is not available: {exc}") from exc


class InMemoryEmailSender(EmailSender):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outbox: list[SentEmail] = []

    def send(
        self,
        from_address: str,
        recipients: Iterable[str],
        subject: str,
        html_body: str,
        attachment: EmailAttachment | None = None,
    ) -> None:
        to_addresses = distinct_recipients(recipients)
        if not to_addresses:
            return
        with self._lock:
            self.outbox.append(
                SentEmail(
                    from_address=from_address,
                    recipients=tuple(to_addresses),
                    subject=subject,
                    html_body=html_body,
                    attachment=attachment,
                ),
            )


def create_email_sender(
    settings: Settings,
    *,
    graph_token_supplier: ProviderTokenSupplier | None = None,
) -> EmailSender:
    if settings.email_delivery == "graph" and graph_token_supplier is not None and settings.has_graph_credentials():
        return GraphEmailSender(
            token_supplier=graph_token_supplier,
            api_base_url=settings.graph_api_base_url,
            timeout_seconds=settings.graph_api_timeout_seconds,
        )
    return _get_in_memory_email_sender()


@lru_cache
def _get_in_memory_email_sender() -> InMemoryEmailSender:
    return InMemoryEmailSender()


def clear_email_sender_cache() -> None:
    _get_in_memory_email_sender.cache_clear()
