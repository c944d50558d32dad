"""
Evia Sign Provider Gateway

All calls to the external signing API go through this adapter: OAuth token
handling, document upload, request submission, status polling and signed
document download.
"""

import asyncio
import base64
import binascii
import json
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import quote, urlencode

import aiohttp
from aiohttp import ClientTimeout

from signature_sync.core.config import Settings
from signature_sync.core.logging import get_logger

from .base import (
    DOCX_MIME,
    NOT_FOUND,
    PDF_MIME,
    SUPPORTED_DOCUMENT_TYPES,
    Artifact,
    AuthRequired,
    CredentialStore,
    Credentials,
    DocumentSource,
    DownloadError,
    EndpointAttempt,
    NotFound,
    PreparedDocument,
    RawStatusResult,
    SignatureError,
    Signatory,
    StampType,
    SubmissionError,
    UploadError,
    try_attempts,
)

logger = get_logger(__name__)

PROVIDER = "evia_sign"

AUTHORIZE_PATH = "/falcon/auth/oauth2/authorize"
TOKEN_PATH = "/falcon/auth/api/v1/Token"
UPLOAD_PATH = "/sign/thumbs/api/Requests/document"
SUBMIT_PATH = "/sign/api/Requests"
# Auto-stamping request type
SUBMIT_REQUEST_TYPE = 3

STATUS_ATTEMPTS: Tuple[EndpointAttempt, ...] = (
    EndpointAttempt("request-status", "/sign/api/Requests/status/{request_id}"),
    EndpointAttempt("request-status-path", "/sign/api/Requests/{request_id}/Status"),
    EndpointAttempt("draft", "/sign/api/Drafts/{request_id}/Status"),
)

DOWNLOAD_ATTEMPTS: Tuple[EndpointAttempt, ...] = (
    EndpointAttempt("request-document", "/sign/api/Requests/document/{request_id}"),
    EndpointAttempt("request-document-path", "/sign/api/Requests/{request_id}/document"),
)

STAMP_COLOR = "#7c95f4"
STAMP_SIZE = {"Height": 50, "Width": 100}
DEFAULT_PRIVATE_MESSAGE = "Please sign this document"

UUID_PATTERN = re.compile(r"[a-fA-F0-9]{8}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{12}")


class EviaSignGateway:
    """Evia Sign API client."""

    def __init__(
        self,
        base_url: str,
        client_id: str = "",
        client_secret: str = "",
        redirect_url: str = "",
        credentials: Optional[CredentialStore] = None,
        timeout_seconds: int = 30,
        upload_timeout_seconds: int = 60,
        refresh_skew_seconds: int = 60,
        default_token_ttl_seconds: int = 86400,
        status_attempts: Sequence[EndpointAttempt] = STATUS_ATTEMPTS,
        download_attempts: Sequence[EndpointAttempt] = DOWNLOAD_ATTEMPTS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the gateway.

        Args:
            base_url: API root, e.g. https://evia.enadocapp.com/_apis
            client_id: OAuth client id
            client_secret: OAuth client secret
            redirect_url: OAuth redirect registered with the provider
            credentials: Store holding the current access/refresh tokens
            timeout_seconds: Total timeout for API calls
            upload_timeout_seconds: Total timeout for document uploads
            refresh_skew_seconds: Refresh tokens this long before they expire
            default_token_ttl_seconds: Lifetime assumed when the provider omits expires_in
            status_attempts: Status endpoint variants in priority order
            download_attempts: Download endpoint variants in priority order
            session: Pre-built HTTP session (created lazily otherwise)
        """
        self.base_url = base_url.rstrip('/')
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url
        self.credentials = credentials or CredentialStore()
        self.refresh_skew_seconds = refresh_skew_seconds
        self.default_token_ttl_seconds = default_token_ttl_seconds
        self.status_attempts = tuple(status_attempts)
        self.download_attempts = tuple(download_attempts)

        self._session = session
        self._owns_session = session is None
        self._timeout = ClientTimeout(total=timeout_seconds, connect=10)
        self._upload_timeout = ClientTimeout(total=upload_timeout_seconds, connect=10)

    @classmethod
    def from_settings(cls, settings: Settings, credentials: Optional[CredentialStore] = None) -> "EviaSignGateway":
        return cls(
            base_url=settings.evia_base_url,
            client_id=settings.evia_client_id,
            client_secret=settings.evia_client_secret,
            redirect_url=settings.evia_redirect_url,
            credentials=credentials,
            timeout_seconds=settings.evia_timeout_seconds,
            upload_timeout_seconds=settings.evia_upload_timeout_seconds,
            refresh_skew_seconds=settings.token_refresh_skew_seconds,
            default_token_ttl_seconds=settings.default_token_ttl_seconds,
        )

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        """Build the URL the user is sent to for granting access."""
        # The provider expects its own spelling of response_type.
        query = urlencode(
            {
                "application_state": "external",
                "resource": "RESOURCE_APPLICATION",
                "client_id": self.client_id,
                "responce_type": "code",
                "redirect_uri": self.redirect_url,
                "state": state,
            },
            quote_via=quote,
        )
        return f"{self.base_url}{AUTHORIZE_PATH}?{query}"

    async def exchange_authorization_code(self, code: str) -> Credentials:
        """
        Exchange an OAuth authorization code for tokens and store them.

        Raises:
            AuthRequired: If the provider rejects the code
        """
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_url,
        }
        credentials = await self._request_token(payload, previous=None)
        self.credentials.store(credentials)
        logger.info("gateway.auth.code_exchanged", expires_at=credentials.expires_at.isoformat())
        return credentials

    async def get_access_token(self) -> str:
        """
        Return a valid access token, refreshing it when it is about to expire.

        Raises:
            AuthRequired: If there is no token and no way to refresh one
        """
        if self.credentials.is_valid(skew_seconds=self.refresh_skew_seconds):
            return self.credentials.get().access_token

        async with self.credentials.refresh_lock:
            # Another caller may have refreshed while we waited.
            if self.credentials.is_valid(skew_seconds=self.refresh_skew_seconds):
                return self.credentials.get().access_token

            current = self.credentials.get()
            if current is None or not current.refresh_token:
                raise AuthRequired(
                    "Provider authentication required",
                    provider=PROVIDER,
                )

            payload = {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": current.refresh_token,
                "grant_type": "refresh_token",
            }
            try:
                refreshed = await self._request_token(payload, previous=current)
            except AuthRequired:
                self.credentials.clear()
                raise
            self.credentials.store(refreshed)
            logger.info("gateway.auth.refreshed", expires_at=refreshed.expires_at.isoformat())
            return refreshed.access_token

    async def _request_token(self, payload: Dict[str, str], previous: Optional[Credentials]) -> Credentials:
        url = f"{self.base_url}{TOKEN_PATH}"
        try:
            async with self.session.post(url, json=payload) as response:
                if response.status not in (200, 201):
                    body = await response.text()
                    logger.warning("gateway.auth.token_rejected", status=response.status)
                    raise AuthRequired(
                        f"Token request rejected with status {response.status}",
                        provider=PROVIDER,
                        provider_response=body,
                        status_code=response.status,
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("gateway.auth.token_request_failed", error=str(e))
            raise AuthRequired(f"Token request failed: {e}", provider=PROVIDER)

        return self._parse_token_response(data or {}, previous)

    def _parse_token_response(self, data: Dict[str, Any], previous: Optional[Credentials]) -> Credentials:
        access_token = data.get("authToken") or data.get("access_token") or data.get("token")
        if not access_token:
            raise AuthRequired("Token response did not include an access token", provider=PROVIDER)

        refresh_token = data.get("refreshToken") or data.get("refresh_token")
        if not refresh_token and previous is not None:
            refresh_token = previous.refresh_token

        try:
            expires_in = int(data.get("expires_in") or self.default_token_ttl_seconds)
        except (TypeError, ValueError):
            expires_in = self.default_token_ttl_seconds

        return Credentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            user_email=data.get("userEmail") or data.get("email") or (previous.user_email if previous else None),
        )

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    def _reject_credentials(self, operation: str) -> AuthRequired:
        self.credentials.clear()
        logger.warning("gateway.auth.rejected", operation=operation)
        return AuthRequired(
            f"Provider rejected credentials during {operation}",
            provider=PROVIDER,
            status_code=401,
        )

    # ------------------------------------------------------------------
    # Documents and requests
    # ------------------------------------------------------------------

    async def prepare_document(self, source: DocumentSource) -> PreparedDocument:
        """
        Resolve a document source to bytes with a supported MIME type.

        Raises:
            UploadError: If the source cannot be read or is not PDF/DOCX
        """
        declared_type = _base_mime(source.content_type)
        name_hint = source.filename or ""

        if source.content is not None:
            content = source.content
        elif source.url and source.url.startswith("data:"):
            content, data_type = _decode_data_uri(source.url)
            declared_type = declared_type or data_type
        elif source.url:
            content, response_type = await self._fetch_source(source.url)
            name_hint = name_hint or source.url.split("?", 1)[0]
            declared_type = declared_type or response_type
        else:
            raise UploadError("Document source has neither content nor url", provider=PROVIDER)

        if not content:
            raise UploadError("Document source is empty", provider=PROVIDER)

        content_type = _detect_content_type(name_hint, declared_type, content)
        if content_type not in SUPPORTED_DOCUMENT_TYPES:
            raise UploadError(
                f"Unsupported document type: {content_type or 'unknown'}",
                error_code="unsupported_type",
                provider=PROVIDER,
            )

        extension = SUPPORTED_DOCUMENT_TYPES[content_type]
        return PreparedDocument(
            content=content,
            content_type=content_type,
            extension=extension,
            filename=f"document_{int(time.time() * 1000)}.{extension}",
        )

    async def _fetch_source(self, url: str) -> Tuple[bytes, Optional[str]]:
        try:
            async with self.session.get(url) as response:
                if response.status != 200:
                    raise UploadError(
                        f"Failed to fetch document: HTTP {response.status}",
                        provider=PROVIDER,
                        status_code=response.status,
                    )
                content = await response.read()
                return content, _base_mime(response.headers.get("Content-Type"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UploadError(f"Failed to fetch document: {e}", provider=PROVIDER)

    async def upload(self, source: DocumentSource) -> str:
        """
        Upload a document and return the provider's document token.

        Raises:
            AuthRequired: If no valid credentials are available
            UploadError: If the document is unreadable, unsupported, or rejected
        """
        document = await self.prepare_document(source)
        headers = await self._auth_headers()

        form = aiohttp.FormData()
        form.add_field("File", document.content, filename=document.filename, content_type=document.content_type)

        url = f"{self.base_url}{UPLOAD_PATH}"
        try:
            async with self.session.post(url, data=form, headers=headers, timeout=self._upload_timeout) as response:
                if response.status == 401:
                    raise self._reject_credentials("upload")
                body = await response.text()
                if response.status not in (200, 201):
                    raise UploadError(
                        f"Document upload failed with status {response.status}",
                        provider=PROVIDER,
                        provider_response=body,
                        status_code=response.status,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("gateway.upload.failed", error=str(e))
            raise UploadError(f"Document upload failed: {e}", provider=PROVIDER)

        token = _extract_document_token(body)
        if not token:
            raise UploadError(
                "Upload response did not contain a document token",
                provider=PROVIDER,
                provider_response=body,
            )

        logger.info("gateway.upload.completed", size_bytes=len(document.content), content_type=document.content_type)
        return token

    def build_submission_payload(
        self,
        document_token: str,
        title: str,
        message: str,
        signatories: Sequence[Signatory],
        callback_url: Optional[str],
        attach_documents_on_complete: bool = True,
    ) -> Dict[str, Any]:
        """Build the multi-signatory auto-stamping request body."""
        return {
            "Message": message,
            "Title": title,
            "CallbackUrl": callback_url or "",
            "CompletedDocumentsAttached": attach_documents_on_complete,
            "Documents": [document_token],
            "PDFComments": [],
            "Signatories": [
                self._build_signatory(signatory, order)
                for order, signatory in enumerate(signatories, start=1)
            ],
            "AuditDetails": {
                "AuthorType": 1,
                "AuthorIPAddress": "",
                "Device": "signature-sync",
            },
            "Connections": [],
        }

    def _build_signatory(self, signatory: Signatory, order: int) -> Dict[str, Any]:
        return {
            "Color": STAMP_COLOR,
            "Email": signatory.email,
            "Name": signatory.name,
            "Order": order,
            "PrivateMessage": signatory.private_message or DEFAULT_PRIVATE_MESSAGE,
            "signatoryType": 1,
            "OTP": {
                "IsRequired": False,
                "AccessCode": "",
                "Type": "1",
                "MobileNumber": "",
            },
            "AutoStamps": [
                _auto_stamp(signatory.identifier, StampType.SIGNATURE, y_offset=-50),
                _auto_stamp(f"email{order}", StampType.EMAIL, y_offset=-25),
                _auto_stamp(f"Date{order}", StampType.DATE, y_offset=-25),
            ],
        }

    async def submit(
        self,
        document_token: str,
        title: str,
        message: str,
        signatories: Sequence[Signatory],
        callback_url: Optional[str],
        attach_documents_on_complete: bool = True,
    ) -> str:
        """
        Submit a signature request and return the provider request id.

        Raises:
            AuthRequired: If no valid credentials are available
            SubmissionError: If the provider rejects the request
        """
        payload = self.build_submission_payload(
            document_token, title, message, signatories, callback_url, attach_documents_on_complete
        )
        headers = await self._auth_headers()

        form = aiohttp.FormData()
        form.add_field("RequestJson", json.dumps(payload))

        url = f"{self.base_url}{SUBMIT_PATH}?type={SUBMIT_REQUEST_TYPE}"
        try:
            async with self.session.post(url, data=form, headers=headers) as response:
                if response.status == 401:
                    raise self._reject_credentials("submit")
                body = await response.text()
                if response.status not in (200, 201):
                    raise SubmissionError(
                        f"Signature request rejected with status {response.status}",
                        provider=PROVIDER,
                        provider_response=body,
                        status_code=response.status,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("gateway.submit.failed", error=str(e))
            raise SubmissionError(f"Signature request failed: {e}", provider=PROVIDER)

        request_id = _extract_request_id(body)
        if not request_id:
            raise SubmissionError(
                "Submission response did not include a request id",
                provider=PROVIDER,
                provider_response=body,
            )

        logger.info("gateway.submit.completed", provider_request_id=request_id, signatories=len(signatories))
        return request_id

    async def poll_status(self, request_id: str) -> Union[RawStatusResult, NotFound]:
        """
        Read the request status, trying each status endpoint variant in order.

        Returns:
            The first non-404 result, or NOT_FOUND when every variant answers 404

        Raises:
            AuthRequired: If no valid credentials are available
            SignatureError: If a variant answers with another error
        """
        headers = await self._auth_headers()

        async def call(attempt: EndpointAttempt) -> Tuple[int, Optional[RawStatusResult]]:
            url = attempt.url(self.base_url, request_id=request_id)
            async with self.session.get(url, headers=headers) as response:
                if response.status == 404:
                    logger.info("gateway.attempt.not_found", endpoint=attempt.name, provider_request_id=request_id)
                    return 404, None
                if response.status == 401:
                    raise self._reject_credentials("poll_status")
                if response.status != 200:
                    body = await response.text()
                    raise SignatureError(
                        f"Status endpoint {attempt.name} answered {response.status}",
                        error_code="status_failed",
                        provider=PROVIDER,
                        provider_response=body,
                        request_id=request_id,
                        status_code=response.status,
                    )
                data = await response.json(content_type=None)
                return response.status, _parse_status(request_id, attempt.name, data)

        try:
            outcome = await try_attempts(self.status_attempts, call)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("gateway.poll.failed", provider_request_id=request_id, error=str(e))
            raise SignatureError(
                f"Failed to poll status: {e}",
                error_code="status_failed",
                provider=PROVIDER,
                request_id=request_id,
            )

        if not outcome.found:
            logger.info("gateway.poll.not_found", provider_request_id=request_id, tried=outcome.tried)
            return NOT_FOUND
        return outcome.value

    async def download_artifact(self, request_id: str) -> Artifact:
        """
        Download the signed document, trying each download endpoint variant in order.

        Raises:
            AuthRequired: If no valid credentials are available
            DownloadError: If every variant fails or the artifact is empty
        """
        headers = await self._auth_headers()

        async def call(attempt: EndpointAttempt) -> Tuple[int, Optional[Artifact]]:
            url = attempt.url(self.base_url, request_id=request_id)
            async with self.session.get(url, headers=headers) as response:
                if response.status == 404:
                    logger.info("gateway.attempt.not_found", endpoint=attempt.name, provider_request_id=request_id)
                    return 404, None
                if response.status == 401:
                    raise self._reject_credentials("download_artifact")
                if response.status != 200:
                    raise DownloadError(
                        f"Download endpoint {attempt.name} answered {response.status}",
                        provider=PROVIDER,
                        provider_response=await response.text(),
                        request_id=request_id,
                        status_code=response.status,
                    )
                content = await response.read()
                content_type = _base_mime(response.headers.get("Content-Type")) or PDF_MIME
                return response.status, Artifact(content=content, content_type=content_type, source=attempt.name)

        try:
            outcome = await try_attempts(self.download_attempts, call)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("gateway.download.failed", provider_request_id=request_id, error=str(e))
            raise DownloadError(f"Failed to download signed document: {e}", provider=PROVIDER, request_id=request_id)

        if not outcome.found:
            raise DownloadError(
                "Signed document not found at any endpoint",
                error_code="artifact_not_found",
                provider=PROVIDER,
                request_id=request_id,
                status_code=404,
            )
        artifact = outcome.value
        if artifact is None or not artifact.content:
            raise DownloadError(
                "Empty document data received",
                error_code="artifact_empty",
                provider=PROVIDER,
                request_id=request_id,
            )

        logger.info("gateway.download.completed", provider_request_id=request_id, size_bytes=len(artifact.content))
        return artifact

    async def health_check(self) -> bool:
        """Return True when a usable token exists and the API root answers."""
        if not self.credentials.is_valid():
            return False
        try:
            async with self.session.get(self.base_url) as response:
                return response.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("gateway.health_check.failed", error=str(e))
            return False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP session if this gateway created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None


def _auto_stamp(identifier: str, stamp_type: StampType, y_offset: int) -> Dict[str, Any]:
    return {
        "Identifier": identifier,
        "Color": STAMP_COLOR,
        "Order": 1,
        "Offset": {"X_offset": 0, "Y_offset": y_offset},
        "StampSize": dict(STAMP_SIZE),
        "Type": stamp_type.value,
    }


def _base_mime(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.split(";", 1)[0].strip().lower() or None


def _decode_data_uri(uri: str) -> Tuple[bytes, Optional[str]]:
    header, _, data = uri.partition(",")
    if not data:
        raise UploadError("Malformed data URI", provider=PROVIDER)
    mime = _base_mime(header[len("data:"):])
    try:
        return base64.b64decode(data, validate=False), mime
    except (binascii.Error, ValueError) as e:
        raise UploadError(f"Invalid base64 document: {e}", provider=PROVIDER)


def _detect_content_type(name_hint: str, declared: Optional[str], content: bytes) -> Optional[str]:
    lowered = name_hint.lower()
    if lowered.endswith(".docx"):
        return DOCX_MIME
    if lowered.endswith(".pdf"):
        return PDF_MIME
    if declared in SUPPORTED_DOCUMENT_TYPES:
        return declared
    if content.startswith(b"%PDF"):
        return PDF_MIME
    if content.startswith(b"PK\x03\x04"):
        return DOCX_MIME
    return declared


def _extract_document_token(body: str) -> Optional[str]:
    text = body.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text.strip('"')
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        token = data.get("documentToken") or data.get("DocumentToken")
        if token:
            return str(token)
    match = UUID_PATTERN.search(text)
    return match.group(0) if match else None


def _extract_request_id(body: str) -> Optional[str]:
    text = body.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text.strip('"')
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        request_id = data.get("requestId") or data.get("RequestId") or data.get("id")
        return str(request_id) if request_id else None
    return None


def _parse_status(request_id: str, endpoint: str, data: Any) -> RawStatusResult:
    if isinstance(data, str):
        return RawStatusResult(request_id=request_id, status=data, endpoint=endpoint)
    data = data if isinstance(data, dict) else {}
    status = data.get("status") or data.get("Status") or data.get("requestStatus") or data.get("RequestStatus")
    signatories: List[Dict[str, Any]] = data.get("signatories") or data.get("Signatories") or []
    return RawStatusResult(
        request_id=request_id,
        status=str(status) if status is not None else None,
        endpoint=endpoint,
        signatories=[s for s in signatories if isinstance(s, dict)],
        payload=data,
    )
