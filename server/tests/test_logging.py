from signature_sync.core.logging import redact_secrets


def test_credentials_and_document_content_are_redacted():
    event = {
        "event": "gateway.auth.refreshed",
        "access_token": "abc",
        "client_secret": "s3cret",
        "DocumentContent": "JVBERi0xLjQ=",
        "provider_request_id": "R1",
    }

    redacted = redact_secrets(None, "info", event)

    assert redacted["access_token"] == "[redacted]"
    assert redacted["client_secret"] == "[redacted]"
    assert redacted["DocumentContent"] == "[redacted]"
    assert redacted["provider_request_id"] == "R1"
