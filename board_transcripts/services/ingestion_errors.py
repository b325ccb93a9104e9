class TranscriptIngestionError(Exception):
    pass


class ConfigurationError(TranscriptIngestionError):
    """Meeting or service setup prevents ingestion; the user must fix it."""


class NotFoundError(TranscriptIngestionError):
    """The meeting, event or recording is unknown to us or to the provider."""


class NotReadyError(TranscriptIngestionError):
    """The transcript exists upstream but is not available yet."""


class AuthFailure(TranscriptIngestionError):
    pass


class UnsupportedProviderError(TranscriptIngestionError):
    pass


class DeliveryError(TranscriptIngestionError):
    pass


class ProviderRequestError(TranscriptIngestionError):
    """Upstream call failed after retries and fallbacks were exhausted."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IngestionCancelledError(TranscriptIngestionError):
    pass
