"""Initial PulseStage schema (tenants, teams, memberships, preferences, questions, tags, audit)

Revision ID: 3e8a1c5f7b20
Revises:
Create Date: 2026-10-18T09:12:44.518203
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = '3e8a1c5f7b20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy stores enum member names
ROLE_ENUM = sa.Enum('VIEWER', 'MEMBER', 'MODERATOR', 'ADMIN', 'OWNER', name='role')
STATUS_ENUM = sa.Enum('OPEN', 'ANSWERED', 'UNDER_REVIEW', name='questionstatus')


def upgrade() -> None:
    # --- tenants ---
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tenants_slug', 'tenants', ['slug'], unique=True)

    op.create_table(
        'tenant_settings',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id'),
    )

    # --- teams ---
    op.create_table(
        'teams',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'slug', name='uq_team_tenant_slug'),
    )
    op.create_index('ix_teams_tenant_id', 'teams', ['tenant_id'])
    op.create_index('idx_team_tenant_active', 'teams', ['tenant_id', 'is_active'])

    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('sso_id', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('primary_team_id', sa.String(), sa.ForeignKey('teams.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'email', name='uq_user_tenant_email'),
    )
    op.create_index('ix_users_tenant_id', 'users', ['tenant_id'])
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_sso_id', 'users', ['sso_id'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])
    op.create_index('idx_user_tenant_active', 'users', ['tenant_id', 'is_active'])

    # --- team_memberships ---
    op.create_table(
        'team_memberships',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('team_id', sa.String(), sa.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', ROLE_ENUM, nullable=False, server_default='MEMBER'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'team_id', name='uq_membership_user_team'),
    )
    op.create_index('ix_team_memberships_user_id', 'team_memberships', ['user_id'])
    op.create_index('ix_team_memberships_team_id', 'team_memberships', ['team_id'])
    op.create_index('idx_membership_team_role', 'team_memberships', ['team_id', 'role'])

    # --- user_preferences ---
    op.create_table(
        'user_preferences',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tenant_id', sa.String(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('favorite_teams', sa.JSON(), nullable=False),
        sa.Column('default_team_id', sa.String(), sa.ForeignKey('teams.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )
    op.create_index('ix_user_preferences_tenant_id', 'user_preferences', ['tenant_id'])

    # --- questions ---
    op.create_table(
        'questions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('team_id', sa.String(), sa.ForeignKey('teams.id'), nullable=True),
        sa.Column('author_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('status', STATUS_ENUM, nullable=False, server_default='OPEN'),
        sa.Column('upvotes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('response_text', sa.Text(), nullable=True),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_pinned', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('pinned_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('pinned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_frozen', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('frozen_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('frozen_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('moderation_reasons', sa.JSON(), nullable=True),
        sa.Column('moderation_confidence', sa.Float(), nullable=True),
        sa.Column('moderation_providers', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_questions_tenant_id', 'questions', ['tenant_id'])
    op.create_index('ix_questions_team_id', 'questions', ['team_id'])
    op.create_index('ix_questions_author_id', 'questions', ['author_id'])
    op.create_index('ix_questions_status', 'questions', ['status'])
    op.create_index('ix_questions_reviewed_by', 'questions', ['reviewed_by'])
    op.create_index('ix_questions_created_at', 'questions', ['created_at'])
    op.create_index('idx_question_tenant_status', 'questions', ['tenant_id', 'status'])
    op.create_index('idx_question_tenant_team', 'questions', ['tenant_id', 'team_id'])

    # --- upvotes ---
    op.create_table(
        'upvotes',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('question_id', sa.String(), sa.ForeignKey('questions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('question_id', 'user_id', name='uq_upvote_question_user'),
    )
    op.create_index('ix_upvotes_question_id', 'upvotes', ['question_id'])
    op.create_index('ix_upvotes_user_id', 'upvotes', ['user_id'])

    # --- tags ---
    op.create_table(
        'tags',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('color', sa.String(), nullable=False, server_default='#3B82F6'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_tag_tenant_name'),
    )
    op.create_index('ix_tags_tenant_id', 'tags', ['tenant_id'])

    op.create_table(
        'question_tags',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('question_id', sa.String(), sa.ForeignKey('questions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tag_id', sa.String(), sa.ForeignKey('tags.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('question_id', 'tag_id', name='uq_question_tag'),
    )
    op.create_index('ix_question_tags_question_id', 'question_tags', ['question_id'])
    op.create_index('ix_question_tags_tag_id', 'question_tags', ['tag_id'])

    # --- audit_logs ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('team_id', sa.String(), nullable=True),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('user_email', sa.String(), nullable=True),
        sa.Column('user_name', sa.String(), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('before_state', sa.JSON(), nullable=True),
        sa.Column('after_state', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_tenant_id', 'audit_logs', ['tenant_id'])
    op.create_index('ix_audit_logs_team_id', 'audit_logs', ['team_id'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_entity_id', 'audit_logs', ['entity_id'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('idx_audit_tenant_created', 'audit_logs', ['tenant_id', 'created_at'])
    op.create_index('idx_audit_tenant_entity', 'audit_logs', ['tenant_id', 'entity_type', 'entity_id'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('question_tags')
    op.drop_table('tags')
    op.drop_table('upvotes')
    op.drop_table('questions')
    op.drop_table('user_preferences')
    op.drop_table('team_memberships')
    op.drop_table('users')
    op.drop_table('teams')
    op.drop_table('tenant_settings')
    op.drop_table('tenants')
    op.execute("DROP TYPE IF EXISTS questionstatus")
    op.execute("DROP TYPE IF EXISTS role")
