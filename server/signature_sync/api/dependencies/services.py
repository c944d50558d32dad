from functools import lru_cache

from signature_sync.core.config import get_settings
from signature_sync.db.session import async_session_factory
from signature_sync.services.container import SignatureServices, build_services


@lru_cache(maxsize=None)
def get_signature_services() -> SignatureServices:
    """Process-wide services; the credential store and finalize single-flight live here."""
    return build_services(get_settings(), async_session_factory)
