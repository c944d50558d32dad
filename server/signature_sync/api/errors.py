from fastapi import HTTPException, status

from signature_sync.integrations.esignature.base import (
    AuthRequired,
    DownloadError,
    EventLogError,
    RecordNotFound,
    SignatureError,
    SubmissionError,
    UploadError,
    ValidationError,
)
from signature_sync.schemas.common import ErrorDetail


def http_error(exc: SignatureError) -> HTTPException:
    """Translate a signing workflow error into the HTTP status callers see."""
    if isinstance(exc, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, AuthRequired):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(exc, RecordNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (UploadError, SubmissionError, DownloadError)):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, EventLogError):
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_502_BAD_GATEWAY

    detail = ErrorDetail(
        error_code=exc.error_code,
        message=exc.error_message,
        re_authenticate=isinstance(exc, AuthRequired),
    )
    return HTTPException(status_code=code, detail=detail.model_dump())
