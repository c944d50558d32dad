"""
E-signature integration modules

Provides the Evia Sign gateway together with the value types, credential
store and error taxonomy shared by the signing workflow.
"""

from .base import (
    Artifact,
    AuthRequired,
    CredentialStore,
    Credentials,
    DocumentSource,
    DownloadError,
    EndpointAttempt,
    NOT_FOUND,
    NotFound,
    RawStatusResult,
    Signatory,
    SignatureError,
    SubmissionError,
    UploadError,
    ValidationError,
    try_attempts,
)
from .evia_adapter import EviaSignGateway

__all__ = [
    "Artifact",
    "AuthRequired",
    "CredentialStore",
    "Credentials",
    "DocumentSource",
    "DownloadError",
    "EndpointAttempt",
    "EviaSignGateway",
    "NOT_FOUND",
    "NotFound",
    "RawStatusResult",
    "Signatory",
    "SignatureError",
    "SubmissionError",
    "UploadError",
    "ValidationError",
    "try_attempts",
]
