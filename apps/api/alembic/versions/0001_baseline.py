"""Baseline migration - cases, message threads and the audit log

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-18

Creates the case table (all kinds share it), the append-only message
thread, the hash-chained audit log and the per-kind case number counters.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from casetriage.db.types import UTCDateTime


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SequenceId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    """Create case triage tables."""

    # ==========================================================================
    # Cases
    # ==========================================================================
    op.create_table(
        'cases',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('case_number', sa.String(20), nullable=False, unique=True),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('subject_user_id', sa.String(100), nullable=True),
        sa.Column('category', sa.String(30), nullable=True),
        sa.Column('severity', sa.String(20), nullable=True),
        sa.Column('severity_rank', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('assigned_to', sa.String(100), nullable=True),
        sa.Column('assigned_at', UTCDateTime(), nullable=True),
        sa.Column('resolution', sa.Text(), nullable=True),
        sa.Column('evidence', sa.JSON(), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('fields', sa.JSON(), nullable=False),
        sa.Column('is_synthetic', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('message_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('closed_at', UTCDateTime(), nullable=True),
        sa.Column('created_at', UTCDateTime(), nullable=False),
        sa.Column('updated_at', UTCDateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('idx_cases_queue', 'cases', ['assigned_to', 'severity_rank', 'created_at'])
    op.create_index('idx_cases_status', 'cases', ['status'])
    op.create_index('idx_cases_kind_status', 'cases', ['kind', 'status'])
    op.create_index('idx_cases_subject', 'cases', ['subject_user_id', 'kind', 'created_at'])

    # ==========================================================================
    # Message thread
    # ==========================================================================
    op.create_table(
        'case_messages',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('sender', sa.String(10), nullable=False),
        sa.Column('author_id', sa.String(100), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('attachments', sa.JSON(), nullable=False),
        sa.Column('created_at', UTCDateTime(), nullable=False),
    )
    op.create_index('idx_case_messages_case_seq', 'case_messages', ['case_id', 'seq'], unique=True)

    # ==========================================================================
    # Audit log (hash-chained per case)
    # ==========================================================================
    op.create_table(
        'audit_entries',
        sa.Column('id', SequenceId, primary_key=True, autoincrement=True),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('actor_id', sa.String(100), nullable=False),
        sa.Column('action', sa.String(40), nullable=False),
        sa.Column('before_state', sa.JSON(), nullable=True),
        sa.Column('after_state', sa.JSON(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('bulk_operation_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', UTCDateTime(), nullable=False),
        sa.Column('prev_hash', sa.String(64), nullable=False),
        sa.Column('entry_hash', sa.String(64), nullable=True),
    )
    op.create_index('idx_audit_case_id', 'audit_entries', ['case_id', 'id'])
    op.create_index('idx_audit_actor_created', 'audit_entries', ['actor_id', 'created_at'])
    op.create_index('idx_audit_action_created', 'audit_entries', ['action', 'created_at'])

    # ==========================================================================
    # Case number counters
    # ==========================================================================
    op.create_table(
        'case_counters',
        sa.Column('kind', sa.String(30), primary_key=True),
        sa.Column('current_value', sa.Integer(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('case_counters')
    op.drop_index('idx_audit_action_created', table_name='audit_entries')
    op.drop_index('idx_audit_actor_created', table_name='audit_entries')
    op.drop_index('idx_audit_case_id', table_name='audit_entries')
    op.drop_table('audit_entries')
    op.drop_index('idx_case_messages_case_seq', table_name='case_messages')
    op.drop_table('case_messages')
    op.drop_index('idx_cases_subject', table_name='cases')
    op.drop_index('idx_cases_kind_status', table_name='cases')
    op.drop_index('idx_cases_status', table_name='cases')
    op.drop_index('idx_cases_queue', table_name='cases')
    op.drop_table('cases')
