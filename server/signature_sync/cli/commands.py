"""
Command line entry points for operators: refresh a signature status or
retry archival of a completed request.
"""

import asyncio
import json
import logging
import sys

import click

from signature_sync.core.config import get_settings
from signature_sync.core.logging import configure_logging
from signature_sync.db.session import async_session_factory
from signature_sync.integrations.esignature.base import SignatureError
from signature_sync.services.container import SignatureServices, build_services


def _services() -> SignatureServices:
    return build_services(get_settings(), async_session_factory)


async def _refresh(agreement_id: str) -> dict:
    services = _services()
    try:
        resolved = await services.reconciler.refresh(agreement_id)
    finally:
        await services.close()
    return {
        "agreement_id": agreement_id,
        "provider_request_id": resolved.provider_request_id,
        "status": resolved.status.value,
        "label": resolved.label,
        "source": resolved.source.value,
        "confidence": resolved.confidence.value,
        "archived_document_ref": resolved.archived_document_ref,
        "signatories": [item.to_dict() for item in resolved.signatories],
    }


async def _finalize(agreement_id: str) -> dict:
    services = _services()
    try:
        record = await services.record_store.get_business_record(agreement_id)
        if record is None or not record.provider_request_id:
            raise click.ClickException(f"Agreement {agreement_id} has not been sent for signature")
        result = await services.completion_handler.finalize(record.provider_request_id, record.id)
    finally:
        await services.close()
    return {
        "agreement_id": agreement_id,
        "provider_request_id": result.provider_request_id,
        "archived": result.archived,
        "archived_document_ref": result.archived_document_ref,
        "source": result.source,
        "error": result.error,
    }


@click.group()
@click.option("--verbose", is_flag=True, help="Log at debug level")
def cli(verbose: bool):
    """Signature request maintenance"""
    configure_logging(logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@click.argument("agreement_id")
def refresh(agreement_id: str):
    """Resolve and store the current signature status of an agreement"""
    try:
        output = asyncio.run(_refresh(agreement_id))
    except SignatureError as exc:
        raise click.ClickException(exc.error_message)
    click.echo(json.dumps(output, indent=2))


@cli.command()
@click.argument("agreement_id")
def finalize(agreement_id: str):
    """Retry archival of the signed document of an agreement"""
    try:
        output = asyncio.run(_finalize(agreement_id))
    except SignatureError as exc:
        raise click.ClickException(exc.error_message)
    click.echo(json.dumps(output, indent=2))
    if not output["archived"]:
        sys.exit(1)


if __name__ == '__main__':
    cli()
