# models.py — Database models for PulseStage
# - UUID primary keys everywhere
# - Every tenant-owned table carries tenant_id
# - Team-scoped roles (viewer, member, moderator, admin, owner)
# - Soft deactivation for users and teams
# - Append-only audit log

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer, Float,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class Role(str, PyEnum):
    """Team role, declared lowest privilege first (see rbac.ROLE_ORDER)."""
    VIEWER = "viewer"
    MEMBER = "member"
    MODERATOR = "moderator"
    ADMIN = "admin"
    OWNER = "owner"


class QuestionStatus(str, PyEnum):
    OPEN = "OPEN"
    ANSWERED = "ANSWERED"
    UNDER_REVIEW = "UNDER_REVIEW"


# ============================================================
# TENANTS
# ============================================================

class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String, primary_key=True, default=new_uuid)
    slug = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    settings = relationship("TenantSettings", back_populates="tenant", uselist=False)


class TenantSettings(Base):
    __tablename__ = "tenant_settings"

    id = Column(String, primary_key=True, default=new_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), unique=True, nullable=False)
    settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="settings")


# ============================================================
# USERS & TEAMS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)
    sso_id = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    primary_team_id = Column(String, ForeignKey("teams.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        Index("idx_user_tenant_active", "tenant_id", "is_active"),
    )


class Team(Base):
    __tablename__ = "teams"

    id = Column(String, primary_key=True, default=new_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "slug", name="uq_team_tenant_slug"),
        Index("idx_team_tenant_active", "tenant_id", "is_active"),
    )


class TeamMembership(Base):
    __tablename__ = "team_memberships"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(Role), default=Role.MEMBER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "team_id", name="uq_membership_user_team"),
        Index("idx_membership_team_role", "team_id", "role"),
    )


class UserPreferences(Base):
    __tablename__ = "user_preferences"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    favorite_teams = Column(JSON, nullable=False, default=list)  # team ids, in the order favorited
    default_team_id = Column(String, ForeignKey("teams.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# QUESTIONS
# ============================================================

class Question(Base):
    __tablename__ = "questions"

    id = Column(String, primary_key=True, default=new_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=True, index=True)
    author_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    body = Column(Text, nullable=False)
    status = Column(SQLEnum(QuestionStatus), default=QuestionStatus.OPEN, nullable=False, index=True)
    upvotes = Column(Integer, default=0, nullable=False)

    response_text = Column(Text, nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_by = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    is_pinned = Column(Boolean, default=False, nullable=False)
    pinned_by = Column(String, ForeignKey("users.id"), nullable=True)
    pinned_at = Column(DateTime(timezone=True), nullable=True)
    is_frozen = Column(Boolean, default=False, nullable=False)
    frozen_by = Column(String, ForeignKey("users.id"), nullable=True)
    frozen_at = Column(DateTime(timezone=True), nullable=True)

    moderation_reasons = Column(JSON, nullable=True)
    moderation_confidence = Column(Float, nullable=True)
    moderation_providers = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_question_tenant_status", "tenant_id", "status"),
        Index("idx_question_tenant_team", "tenant_id", "team_id"),
    )


class Upvote(Base):
    __tablename__ = "upvotes"

    id = Column(String, primary_key=True, default=new_uuid)
    question_id = Column(String, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("question_id", "user_id", name="uq_upvote_question_user"),
    )


# ============================================================
# TAGS
# ============================================================

class Tag(Base):
    __tablename__ = "tags"

    id = Column(String, primary_key=True, default=new_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String, nullable=False, default="#3B82F6")
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_tag_tenant_name"),
    )


class QuestionTag(Base):
    __tablename__ = "question_tags"

    id = Column(String, primary_key=True, default=new_uuid)
    question_id = Column(String, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True)
    tag_id = Column(String, ForeignKey("tags.id", ondelete="CASCADE"), nullable=False, index=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("question_id", "tag_id", name="uq_question_tag"),
    )


# ============================================================
# AUDIT LOG
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    # Team the entry concerns; NULL for tenant-level entries
    team_id = Column(String, nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    user_email = Column(String, nullable=True)
    user_name = Column(String, nullable=True)
    action = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=True, index=True)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    audit_metadata = Column("metadata", JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    request_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_audit_tenant_created", "tenant_id", "created_at"),
        Index("idx_audit_tenant_entity", "tenant_id", "entity_type", "entity_id"),
    )
