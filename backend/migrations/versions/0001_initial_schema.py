"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the reconciliation schema:
- chairs: registry plus the single-use intent and current-session sub-records
- device_status: last heartbeat per chair (online-ness derived at read time)
- payments: processor payments mirrored locally, with write-once guards
- chair_sessions: one row per funded session; one active session per chair
- audit_logs: append-only dashboard event log
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """
    WHY: The uniqueness rules the pipeline relies on (payment_id unique, one
    payment per session, one active session per chair) live in the schema so
    they hold even if two handlers race.
    """

    # ============================================================================
    # chairs: Device registry
    # ============================================================================
    op.create_table(
        'chairs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('chair_id', sa.String(length=20), nullable=False),
        sa.Column('ip_address', sa.String(length=32), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=False, server_default='900'),
        sa.Column('location', sa.String(length=100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('public_payment_url', sa.String(length=255), nullable=True),
        sa.Column('intent_payment_id', sa.String(length=64), nullable=True),
        sa.Column('intent_qr_code', sa.Text(), nullable=True),
        sa.Column('intent_qr_code_base64', sa.Text(), nullable=True),
        sa.Column('intent_amount_cents', sa.Integer(), nullable=True),
        sa.Column('intent_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('intent_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('session_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('session_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('session_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('session_payment_id', sa.String(length=64), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_chairs_chair_id', 'chairs', ['chair_id'], unique=True)
    op.create_index('ix_chairs_is_active', 'chairs', ['is_active'])
    op.create_index('ix_chairs_session_active_ends', 'chairs', ['session_active', 'session_ends_at'])

    # ============================================================================
    # device_status: Heartbeats
    # ============================================================================
    op.create_table(
        'device_status',
        sa.Column('chair_id', sa.String(length=20), nullable=False),
        sa.Column('is_online', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_ping', sa.DateTime(timezone=True), nullable=True),
        sa.Column('firmware_version', sa.String(length=32), nullable=True),
        sa.Column('signal_strength', sa.Integer(), nullable=True),
        sa.Column('uptime_seconds', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['chair_id'], ['chairs.chair_id']),
        sa.PrimaryKeyConstraint('chair_id'),
    )

    # ============================================================================
    # payments: Processor payments
    # ============================================================================
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payment_id', sa.String(length=64), nullable=False),
        sa.Column('chair_id', sa.String(length=20), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('source', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notification_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_notification_error', sa.String(length=255), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['chair_id'], ['chairs.chair_id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payments_payment_id', 'payments', ['payment_id'], unique=True)
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'])
    op.create_index('ix_payments_chair_created', 'payments', ['chair_id', 'created_at'])

    # ============================================================================
    # chair_sessions: Funded usage windows
    # ============================================================================
    op.create_table(
        'chair_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('chair_id', sa.String(length=20), nullable=False),
        sa.Column('payment_id', sa.String(length=64), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expected_end_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(['chair_id'], ['chairs.chair_id']),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.payment_id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_chair_sessions_chair_id', 'chair_sessions', ['chair_id'])
    op.create_index(
        'uq_chair_sessions_one_active',
        'chair_sessions',
        ['chair_id'],
        unique=True,
        sqlite_where=sa.text('is_active = 1'),
        postgresql_where=sa.text('is_active'),
    )

    # ============================================================================
    # audit_logs: Append-only event log
    # ============================================================================
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor', sa.String(length=64), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=True),
        sa.Column('chair_id', sa.String(length=20), nullable=True),
        sa.Column('payment_id', sa.String(length=64), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('old_values', sa.JSON(), nullable=True),
        sa.Column('new_values', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_payment_id', 'audit_logs', ['payment_id'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_logs_chair_created', 'audit_logs', ['chair_id', 'created_at'])
    op.create_index('ix_audit_logs_action_created', 'audit_logs', ['action', 'created_at'])


def downgrade():
    op.drop_table('audit_logs')
    op.drop_index('uq_chair_sessions_one_active', table_name='chair_sessions')
    op.drop_table('chair_sessions')
    op.drop_table('payments')
    op.drop_table('device_status')
    op.drop_table('chairs')
