"""Incident ledger: incidents, versions, counters, audit log, users

Revision ID: a1c9e4f2b7d0
Revises:
Create Date: 2026-10-18 00:00:00.000000

Adds 5 tables:
- users (bearer token subjects)
- incidents (identity + per-organisation internal id)
- incident_versions (immutable snapshots, unique token, single latest row)
- incident_counters (per-organisation internal id allocation)
- audit_logs (administrative incident actions)
"""
from alembic import op
import sqlalchemy as sa

revision = 'a1c9e4f2b7d0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ---- users ----
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False, server_default=''),
        sa.Column('role', sa.Enum('SUPER_ADMIN', 'ORG_ADMIN', 'AUDITOR', 'MEMBER', name='userrole'), nullable=False),
        sa.Column('organisation_id', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('idx_user_org_active', 'users', ['organisation_id', 'is_active'])

    # ---- incidents ----
    op.create_table(
        'incidents',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('organisation_id', sa.String(), nullable=False),
        sa.Column('internal_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organisation_id', 'internal_id', name='uq_incident_org_internal_id'),
    )
    op.create_index('ix_incidents_organisation_id', 'incidents', ['organisation_id'])
    op.create_index('ix_incidents_updated_at', 'incidents', ['updated_at'])

    # ---- incident_versions ----
    op.create_table(
        'incident_versions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('incident_id', sa.String(), sa.ForeignKey('incidents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('is_latest', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('token', sa.String(128), nullable=False),
        sa.Column('detection_date', sa.Date(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('incident_type', sa.String(), nullable=True),
        sa.Column('data_categories', sa.JSON(), nullable=False),
        sa.Column('affected_subjects', sa.Integer(), nullable=True),
        sa.Column('affected_records', sa.Integer(), nullable=True),
        sa.Column('consequences', sa.Text(), nullable=True),
        sa.Column('probable_risks', sa.Text(), nullable=True),
        sa.Column('measures_taken', sa.Text(), nullable=True),
        sa.Column('planned_measures', sa.Text(), nullable=True),
        sa.Column('regulator_notified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('regulator_notification_date', sa.Date(), nullable=True),
        sa.Column('notification_delay_reason', sa.Text(), nullable=True),
        sa.Column('affected_parties_notified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('affected_parties_notification_date', sa.Date(), nullable=True),
        sa.Column('contact_name', sa.String(), nullable=True),
        sa.Column('contact_email', sa.String(), nullable=True),
        sa.Column('contact_phone', sa.String(), nullable=True),
        sa.Column('resolution_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='open'),
        sa.Column('internal_notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token'),
        sa.UniqueConstraint('incident_id', 'version_number', name='uq_incident_version_number'),
    )
    op.create_index('ix_incident_versions_incident_id', 'incident_versions', ['incident_id'])
    op.create_index(
        'uq_incident_version_latest', 'incident_versions', ['incident_id'],
        unique=True,
        postgresql_where=sa.text('is_latest'),
        sqlite_where=sa.text('is_latest'),
    )

    # ---- incident_counters ----
    op.create_table(
        'incident_counters',
        sa.Column('organisation_id', sa.String(), nullable=False),
        sa.Column('last_internal_id', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('organisation_id'),
    )

    # ---- audit_logs ----
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column(
            'event_type',
            sa.Enum('INCIDENT_CREATED', 'INCIDENT_VERSION_CREATED', 'INCIDENT_DELETED', name='auditeventtype'),
            nullable=False,
        ),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('organisation_id', sa.String(), nullable=False),
        sa.Column('resource_type', sa.String(), nullable=False, server_default='incident'),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_organisation_id', 'audit_logs', ['organisation_id'])
    op.create_index('idx_audit_org_time', 'audit_logs', ['organisation_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('incident_counters')
    op.drop_index('uq_incident_version_latest', table_name='incident_versions')
    op.drop_table('incident_versions')
    op.drop_table('incidents')
    op.drop_table('users')
    op.execute('DROP TYPE IF EXISTS auditeventtype')
    op.execute('DROP TYPE IF EXISTS userrole')
