"""
E-signature Base Classes and Value Types

Defines the data passed to and returned from the signing provider gateway,
the credential store it authenticates with, and the error taxonomy shared
by every component that talks to the provider.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar


PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

SUPPORTED_DOCUMENT_TYPES: Dict[str, str] = {
    PDF_MIME: "pdf",
    DOCX_MIME: "docx",
}


class StampType(str, Enum):
    """Auto-stamp kinds placed for every signatory."""
    SIGNATURE = "signature"
    EMAIL = "email"
    DATE = "date"


@dataclass
class DocumentSource:
    """A document to upload: raw bytes, a data: URI, or a fetchable URL."""
    content: Optional[bytes] = None
    url: Optional[str] = None
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass
class PreparedDocument:
    """A document normalized for upload."""
    content: bytes
    content_type: str
    extension: str
    filename: str


@dataclass
class Signatory:
    """A signatory as dispatched to the provider."""
    name: str
    email: str
    identifier: str  # text anchor the signature stamp is placed against
    role: Optional[str] = None
    private_message: Optional[str] = None


@dataclass
class RawStatusResult:
    """Status as reported by one of the provider's status endpoints."""
    request_id: str
    status: Optional[str]
    endpoint: str
    signatories: List[Dict[str, Any]] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Artifact:
    """A signed document ready for archival."""
    content: bytes
    content_type: str = PDF_MIME
    filename: Optional[str] = None
    source: str = "download"


class NotFound:
    """Sentinel returned when every status endpoint variant answers 404."""

    _instance: Optional["NotFound"] = None

    def __new__(cls) -> "NotFound":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NotFound"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = NotFound()


class SignatureError(Exception):
    """Base class for signing workflow errors."""

    error_code_default = "signature_error"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        provider_response: Optional[Any] = None,
        request_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code or self.error_code_default
        self.provider = provider
        self.provider_response = provider_response
        self.request_id = request_id
        self.status_code = status_code


class ValidationError(SignatureError):
    """Caller input is malformed. Never retried."""
    error_code_default = "validation_error"


class AuthRequired(SignatureError):
    """No usable provider credentials. The user has to re-authenticate."""
    error_code_default = "auth_required"


class UploadError(SignatureError):
    error_code_default = "upload_failed"


class SubmissionError(SignatureError):
    error_code_default = "submission_failed"


class DownloadError(SignatureError):
    error_code_default = "download_failed"


class EventLogError(SignatureError):
    """The event log write failed; the webhook delivery is lost."""
    error_code_default = "event_log_write_failed"


class ArchiveError(SignatureError):
    error_code_default = "archive_failed"


class RecordNotFound(SignatureError):
    error_code_default = "record_not_found"


@dataclass
class Credentials:
    """Provider OAuth credentials with an absolute expiry."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    user_email: Optional[str] = None

    def is_valid(self, now: Optional[datetime] = None, skew_seconds: int = 0) -> bool:
        if not self.access_token or self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at - timedelta(seconds=skew_seconds) > now


class CredentialStore:
    """
    Holds the provider credentials for one gateway.

    Passed to the gateway explicitly so token state is visible to, and
    replaceable by, whoever constructs the gateway.
    """

    def __init__(self, credentials: Optional[Credentials] = None):
        self._credentials = credentials
        self.refresh_lock = asyncio.Lock()

    def get(self) -> Optional[Credentials]:
        return self._credentials

    def store(self, credentials: Credentials) -> None:
        self._credentials = credentials

    def clear(self) -> None:
        self._credentials = None

    @property
    def expires_at(self) -> Optional[datetime]:
        return self._credentials.expires_at if self._credentials else None

    def is_valid(self, now: Optional[datetime] = None, skew_seconds: int = 0) -> bool:
        return self._credentials is not None and self._credentials.is_valid(now, skew_seconds)


@dataclass(frozen=True)
class EndpointAttempt:
    """One variant of a provider endpoint, tried in sequence with its siblings."""
    name: str
    path: str

    def url(self, base_url: str, **params: str) -> str:
        return f"{base_url.rstrip('/')}{self.path.format(**params)}"


T = TypeVar("T")


@dataclass
class AttemptOutcome(Generic[T]):
    """Result of walking an ordered list of endpoint attempts."""
    value: Optional[T]
    attempt: Optional[EndpointAttempt]
    tried: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.attempt is not None


async def try_attempts(
    attempts: Sequence[EndpointAttempt],
    call: Callable[[EndpointAttempt], Awaitable[Tuple[int, Optional[T]]]],
) -> AttemptOutcome[T]:
    """
    Call each attempt in order and stop at the first one that is not a 404.

    Args:
        attempts: Endpoint variants in priority order
        call: Performs one attempt and returns (http_status, value)

    Returns:
        AttemptOutcome with the winning attempt, or no attempt if every variant 404'd
    """
    tried: List[Tuple[str, int]] = []
    for attempt in attempts:
        status, value = await call(attempt)
        tried.append((attempt.name, status))
        if status != 404:
            return AttemptOutcome(value=value, attempt=attempt, tried=tried)
    return AttemptOutcome(value=None, attempt=None, tried=tried)
