"""baseline

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_PAIR_CLAUSE = (
    "status IN ('pending_interest', 'pre_chat_active', 'pending_review', 'info_requested', 'approved', "
    "'both_accepted')"
)


def upgrade() -> None:
    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_type', sa.String(20), nullable=False),
        sa.Column('email', sa.String(), unique=True, nullable=False),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('age_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    # --- applications ---
    op.create_table(
        'applications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('youth_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('elderly_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending_interest'),
        sa.Column('youth_decision', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('elderly_decision', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('motivation_letter', sa.Text(), nullable=True),
        sa.Column('reviewed_by', sa.Integer(), nullable=True),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('info_requested', sa.Text(), nullable=True),
        sa.Column('locked_by', sa.Integer(), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expiry_notified_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_applications_youth_id', 'applications', ['youth_id'])
    op.create_index('ix_applications_elderly_id', 'applications', ['elderly_id'])
    op.create_index('ix_applications_status', 'applications', ['status'])
    op.create_index('ix_applications_applied_at', 'applications', ['applied_at'])
    op.create_index(
        'uq_applications_active_pair',
        'applications',
        ['youth_id', 'elderly_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PAIR_CLAUSE),
    )

    # --- relationships ---
    op.create_table(
        'relationships',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('youth_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('elderly_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('application_id', sa.String(36), sa.ForeignKey('applications.id'), unique=True, nullable=False),
        sa.Column('current_stage', sa.String(30), nullable=False, server_default='getting_to_know'),
        sa.Column('stage_start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('stage_metrics', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('end_request_status', sa.String(30), nullable=False, server_default='none'),
        sa.Column('end_request_by', sa.Integer(), nullable=True),
        sa.Column('end_request_reason', sa.Text(), nullable=True),
        sa.Column('end_request_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cooling_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('progress_frozen_at', sa.Float(), nullable=True),
        sa.Column('end_admin_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_relationships_youth_id', 'relationships', ['youth_id'])
    op.create_index('ix_relationships_elderly_id', 'relationships', ['elderly_id'])
    op.create_index('ix_relationships_status', 'relationships', ['status'])

    # --- stage_requirements ---
    op.create_table(
        'stage_requirements',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('relationship_id', sa.String(36), sa.ForeignKey('relationships.id', ondelete='CASCADE'), nullable=False),
        sa.Column('stage', sa.String(30), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('completion_mode', sa.String(20), nullable=False, server_default='counted'),
        sa.Column('metric', sa.String(30), nullable=True),
        sa.Column('required_value', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('youth_signed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('elderly_signed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_completed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_stage_requirements_relationship_id', 'stage_requirements', ['relationship_id'])
    op.create_index('ix_stage_requirements_rel_stage', 'stage_requirements', ['relationship_id', 'stage'])

    # --- stage_transitions ---
    op.create_table(
        'stage_transitions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('relationship_id', sa.String(36), sa.ForeignKey('relationships.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_stage', sa.String(30), nullable=False),
        sa.Column('to_stage', sa.String(30), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        'uq_stage_transitions_rel_to', 'stage_transitions', ['relationship_id', 'to_stage'], unique=True
    )

    # --- messages ---
    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('sender_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('receiver_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('application_id', sa.String(36), sa.ForeignKey('applications.id'), nullable=True),
        sa.Column('relationship_id', sa.String(36), sa.ForeignKey('relationships.id'), nullable=True),
        sa.Column('message_type', sa.String(20), nullable=False, server_default='text'),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_messages_application_id', 'messages', ['application_id'])
    op.create_index('ix_messages_relationship_id', 'messages', ['relationship_id'])

    # --- notifications ---
    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('reference_id', sa.String(36), nullable=True),
        sa.Column('reference_table', sa.String(50), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_table('messages')
    op.drop_table('stage_transitions')
    op.drop_table('stage_requirements')
    op.drop_table('relationships')
    op.drop_index('uq_applications_active_pair', table_name='applications')
    op.drop_table('applications')
    op.drop_table('users')
