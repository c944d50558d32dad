"""Create agreements and webhook event log tables

Revision ID: 20261019_001_create_signature_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_001_create_signature_tables'
down_revision = None
branch_labels = None
depends_on = None


agreement_status = sa.Enum('DRAFT', 'PENDING_SIGNATURE', 'SIGNED', name='agreementstatus')
canonical_status = sa.Enum(
    'NONE', 'PENDING', 'PARTIALLY_SIGNED', 'COMPLETED', 'FAILED', 'UNKNOWN', name='canonicalstatus'
)


def upgrade() -> None:
    op.create_table('agreements',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('status', agreement_status, nullable=False),
        sa.Column('provider_request_id', sa.String(length=120), nullable=True),
        sa.Column('signature_status', canonical_status, nullable=False),
        sa.Column('signatories', sa.JSON(), nullable=False),
        sa.Column('archived_document_ref', sa.Text(), nullable=True),
        sa.Column('signature_error', sa.Text(), nullable=True),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f('ix_agreements_provider_request_id'), 'agreements', ['provider_request_id'], unique=True)

    # Append-only: the application never updates or deletes these rows.
    # Provider text fields are unbounded so no valid delivery is refused.
    op.create_table('webhook_events',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        sa.Column('provider_request_id', sa.String(length=120), nullable=False),
        sa.Column('event_kind', sa.Integer(), nullable=False),
        sa.Column('event_description', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('actor_name', sa.Text(), nullable=True),
        sa.Column('actor_email', sa.Text(), nullable=True),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('event_kind IN (1, 2, 3)', name='ck_webhook_events_event_kind'),
    )
    op.create_index(op.f('ix_webhook_events_provider_request_id'), 'webhook_events', ['provider_request_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_webhook_events_provider_request_id'), table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index(op.f('ix_agreements_provider_request_id'), table_name='agreements')
    op.drop_table('agreements')
    canonical_status.drop(op.get_bind(), checkfirst=True)
    agreement_status.drop(op.get_bind(), checkfirst=True)
