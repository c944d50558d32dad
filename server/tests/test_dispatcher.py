import pytest

from conftest import PDF_BYTES, make_record
from signature_sync.integrations.esignature.base import (
    AuthRequired,
    CredentialStore,
    DocumentSource,
    RecordNotFound,
    Signatory,
    ValidationError,
)
from signature_sync.models.agreement import AgreementStatus, CanonicalStatus, SignatoryStatus
from signature_sync.services.dispatcher import Dispatcher, with_callback_token
from signature_sync.services.record_store import SignatoryProgress

DOCUMENT = DocumentSource(content=PDF_BYTES)


def signatories():
    return [
        Signatory(name="Landlord", email="landlord@x.com", identifier="LandlordSign"),
        Signatory(name="Tenant", email="tenant@x.com", identifier="TenantSign"),
    ]


class TestDispatcher:
    @pytest.fixture(autouse=True)
    def record(self, record_store):
        return record_store.add(
            make_record(
                archived_document_ref="archive://old.pdf",
                signatories=[SignatoryProgress(name="Old", email="old@x.com", status=SignatoryStatus.SIGNED)],
            )
        )

    @pytest.mark.asyncio
    async def test_empty_signatories_fail_without_network(self, dispatcher, gateway, record_store):
        with pytest.raises(ValidationError):
            await dispatcher.dispatch("agr-1", DOCUMENT, "Lease", "", [])
        assert gateway.calls == []
        assert record_store.updates == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "signatory",
        [
            Signatory(name="", email="a@x.com", identifier="A"),
            Signatory(name="A", email="", identifier="A"),
            Signatory(name="A", email="a@x.com", identifier="  "),
            Signatory(name="A", email="not-an-email", identifier="A"),
        ],
    )
    async def test_partial_signatory_is_rejected(self, dispatcher, gateway, signatory):
        with pytest.raises(ValidationError):
            await dispatcher.dispatch("agr-1", DOCUMENT, "Lease", "", [signatory])
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_email_is_rejected(self, dispatcher, gateway):
        duplicate = signatories() + [Signatory(name="Twin", email="LANDLORD@x.com", identifier="Twin")]
        with pytest.raises(ValidationError):
            await dispatcher.dispatch("agr-1", DOCUMENT, "Lease", "", duplicate)
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_missing_title_is_rejected(self, dispatcher, gateway):
        with pytest.raises(ValidationError):
            await dispatcher.dispatch("agr-1", DOCUMENT, "  ", "", signatories())
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_unknown_record(self, dispatcher, gateway):
        with pytest.raises(RecordNotFound):
            await dispatcher.dispatch("missing", DOCUMENT, "Lease", "", signatories())
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_missing_credentials_surface_auth_required(self, dispatcher, gateway):
        gateway.credentials = CredentialStore()
        with pytest.raises(AuthRequired):
            await dispatcher.dispatch("agr-1", DOCUMENT, "Lease", "", signatories())
        assert "upload" not in gateway.calls

    @pytest.mark.asyncio
    async def test_dispatch_persists_correlation_id(self, dispatcher, gateway, record_store):
        request_id = await dispatcher.dispatch("agr-1", DOCUMENT, "Lease", "Please sign", signatories())

        assert request_id == "R1"
        assert gateway.calls == ["get_access_token", "upload", "submit"]
        stored = record_store.records["agr-1"]
        assert stored.provider_request_id == "R1"
        assert stored.canonical_status == CanonicalStatus.PENDING
        assert stored.business_status == AgreementStatus.PENDING_SIGNATURE
        assert stored.archived_document_ref is None
        assert [item.email for item in stored.signatories] == ["landlord@x.com", "tenant@x.com"]
        assert {item.status for item in stored.signatories} == {SignatoryStatus.PENDING}

    @pytest.mark.asyncio
    async def test_default_callback_url_is_used(self, dispatcher, gateway):
        await dispatcher.dispatch("agr-1", DOCUMENT, "Lease", "", signatories())
        assert gateway.submissions[0]["callback_url"] == "https://app.example.com/webhooks/evia-sign"

    @pytest.mark.asyncio
    async def test_callback_url_carries_webhook_secret(self, gateway, record_store):
        dispatcher = Dispatcher(
            gateway,
            record_store,
            default_callback_url="https://app.example.com/webhooks/evia-sign",
            webhook_secret="s3cret",
        )

        await dispatcher.dispatch("agr-1", DOCUMENT, "Lease", "", signatories(), callback_url="https://hooks.example.com/in?src=evia")

        assert gateway.submissions[0]["callback_url"] == "https://hooks.example.com/in?src=evia&token=s3cret"


def test_with_callback_token_replaces_existing_token():
    assert with_callback_token("https://x.com/hook?token=old&a=1", "new") == "https://x.com/hook?a=1&token=new"
    assert with_callback_token("https://x.com/hook", None) == "https://x.com/hook"
