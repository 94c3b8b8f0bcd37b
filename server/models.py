"""
SQLAlchemy models for the RepoRadar platform
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Float, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

Base = declarative_base()


# =============================================================================
# USERS & AUTH
# =============================================================================

class User(Base):
    """A registered account"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=False)
    first_name = Column(String)
    last_name = Column(String)

    # Subscription
    subscription_tier = Column(String, default="free", nullable=False)  # free | pro | enterprise
    subscription_status = Column(String, default="inactive", nullable=False)  # active | past_due | cancelled | inactive
    subscription_end_date = Column(DateTime)
    cancel_at_period_end = Column(Integer, default=0, nullable=False)  # SQLite boolean
    stripe_customer_id = Column(String, unique=True)
    stripe_subscription_id = Column(String)

    # Daily analysis quota
    analysis_count = Column(Integer, default=0, nullable=False)
    last_analysis_reset = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Login protection
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    account_locked_until = Column(DateTime)
    last_login_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    bookmarks = relationship("Bookmark", back_populates="user", cascade="all, delete-orphan")
    preferences = relationship("UserPreference", back_populates="user", uselist=False, cascade="all, delete-orphan")
    api_keys = relationship("ApiKey", back_populates="user", cascade="all, delete-orphan")
    webhooks = relationship("Webhook", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', tier='{self.subscription_tier}')>"


class PasswordResetToken(Base):
    """Single-use password reset token (only the hash is stored)"""
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String, nullable=False, unique=True)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# =============================================================================
# REPOSITORIES & ANALYSES
# =============================================================================

class Repository(Base):
    """A GitHub repository. The primary key is GitHub's own repository id."""
    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False)
    full_name = Column(String, nullable=False, unique=True, index=True)
    owner = Column(String, nullable=False)
    description = Column(Text)
    language = Column(String)
    stars = Column(Integer, default=0)
    forks = Column(Integer, default=0)
    watchers = Column(Integer, default=0)
    size = Column(Integer, default=0)
    html_url = Column(String, nullable=False)
    clone_url = Column(String)
    languages = Column(Text)  # JSON: {"Python": 12345}
    topics = Column(Text)  # JSON: ["cli", "parser"]
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    last_analyzed = Column(DateTime)
    analysis_count = Column(Integer, default=0, nullable=False)
    reanalysis_locked_until = Column(DateTime)

    analysis = relationship("RepositoryAnalysis", back_populates="repository", uselist=False, cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Repository(id={self.id}, full_name='{self.full_name}', stars={self.stars})>"


class RepositoryAnalysis(Base):
    """AI scoring of a repository. Scores are on a 1-10 scale."""
    __tablename__ = "repository_analyses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))

    originality = Column(Float, nullable=False)
    completeness = Column(Float, nullable=False)
    marketability = Column(Float, nullable=False)
    monetization = Column(Float, nullable=False)
    usefulness = Column(Float, nullable=False)
    overall_score = Column(Float, nullable=False)

    summary = Column(Text, nullable=False)
    strengths = Column(Text, nullable=False)  # JSON: [{"point", "reason"}]
    weaknesses = Column(Text, nullable=False)  # JSON: [{"point", "reason"}]
    recommendations = Column(Text, nullable=False)  # JSON: [{"suggestion", "reason", "impact"}]
    score_explanations = Column(Text)  # JSON: {"originality": "...", ...}
    is_fallback = Column(Integer, default=0, nullable=False)  # SQLite boolean

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    repository = relationship("Repository", back_populates="analysis")

    def __repr__(self):
        return f"<RepositoryAnalysis(id={self.id}, repository_id={self.repository_id}, overall={self.overall_score})>"


class SimilarRepository(Base):
    __tablename__ = "similar_repositories"
    __table_args__ = (UniqueConstraint("repository_id", "similar_repository_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    similar_repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    similarity = Column(Float, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    similar_repository = relationship("Repository", foreign_keys=[similar_repository_id])


# =============================================================================
# PERSONAL LIBRARY
# =============================================================================

class Bookmark(Base):
    __tablename__ = "bookmarks"
    __table_args__ = (UniqueConstraint("user_id", "repository_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="bookmarks")
    repository = relationship("Repository")


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    color = Column(String, default="#FF6B35", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RepositoryTag(Base):
    __tablename__ = "repository_tags"
    __table_args__ = (UniqueConstraint("repository_id", "tag_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    tag = relationship("Tag")


class Collection(Base):
    """A user-defined named grouping of saved repositories"""
    __tablename__ = "collections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    is_public = Column(Integer, default=0, nullable=False)  # SQLite boolean
    icon = Column(String, default="folder", nullable=False)
    color = Column(String, default="#FF6B35", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship(
        "CollectionItem", back_populates="collection",
        cascade="all, delete-orphan", order_by="CollectionItem.position",
    )


class CollectionItem(Base):
    __tablename__ = "collection_items"
    __table_args__ = (UniqueConstraint("collection_id", "repository_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(Integer, ForeignKey("collections.id", ondelete="CASCADE"), nullable=False)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, default=0, nullable=False)
    notes = Column(Text)
    added_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    collection = relationship("Collection", back_populates="items")
    repository = relationship("Repository")


class UserPreference(Base):
    __tablename__ = "user_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    preferred_languages = Column(Text, default="[]", nullable=False)  # JSON list
    preferred_topics = Column(Text, default="[]", nullable=False)  # JSON list
    excluded_topics = Column(Text, default="[]", nullable=False)  # JSON list
    email_notifications = Column(Integer, default=1, nullable=False)
    ai_recommendations = Column(Integer, default=1, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="preferences")


class UserActivity(Base):
    __tablename__ = "user_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String, nullable=False)  # "analyzed", "bookmarked", ...
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="SET NULL"))
    details = Column(Text)  # JSON
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


# =============================================================================
# TEAMS
# =============================================================================

class Team(Base):
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    members = relationship("TeamMember", back_populates="team", cascade="all, delete-orphan")


class TeamMember(Base):
    __tablename__ = "team_members"
    __table_args__ = (UniqueConstraint("team_id", "user_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(String, default="member", nullable=False)  # owner | admin | member | viewer
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    team = relationship("Team", back_populates="members")
    user = relationship("User")


class TeamInvitation(Base):
    __tablename__ = "team_invitations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    email = Column(String, nullable=False)
    role = Column(String, default="member", nullable=False)
    token = Column(String, nullable=False, unique=True)
    invited_by = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    team = relationship("Team")


class SharedAnalysis(Base):
    __tablename__ = "shared_analyses"
    __table_args__ = (UniqueConstraint("analysis_id", "team_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    analysis_id = Column(Integer, ForeignKey("repository_analyses.id", ondelete="CASCADE"), nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    shared_by = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    analysis = relationship("RepositoryAnalysis")


# =============================================================================
# DEVELOPER API
# =============================================================================

class ApiKey(Base):
    """Developer API key. Only the SHA-256 hash of the key is stored."""
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    key_hash = Column(String, nullable=False, unique=True, index=True)
    key_prefix = Column(String, nullable=False)  # first characters, for display
    permissions = Column(Text, default='["read"]', nullable=False)  # JSON list
    rate_limit = Column(Integer, default=1000, nullable=False)  # requests per hour
    is_active = Column(Integer, default=1, nullable=False)
    last_used_at = Column(DateTime)
    expires_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="api_keys")


class ApiUsage(Base):
    __tablename__ = "api_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    api_key_id = Column(Integer, ForeignKey("api_keys.id", ondelete="CASCADE"), nullable=False, index=True)
    endpoint = Column(String, nullable=False)
    method = Column(String, nullable=False)
    status_code = Column(Integer, nullable=False)
    response_time_ms = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class Webhook(Base):
    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    url = Column(String, nullable=False)
    events = Column(Text, default='["repository.analyzed"]', nullable=False)  # JSON list
    secret = Column(String, nullable=False)
    is_active = Column(Integer, default=1, nullable=False)
    last_triggered_at = Column(DateTime)
    failure_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="webhooks")


# =============================================================================
# BILLING
# =============================================================================

class SubscriptionEvent(Base):
    """Processed Stripe webhook events, used for idempotency and audit"""
    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    stripe_event_id = Column(String, nullable=False, unique=True)
    event_type = Column(String, nullable=False)
    data = Column(Text)  # JSON
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# =============================================================================
# BATCH ANALYSIS
# =============================================================================

class BatchJob(Base):
    """A server-side batch of repository analyses"""
    __tablename__ = "batch_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String, default="queued", nullable=False)  # queued | processing | completed | failed | cancelled
    total_items = Column(Integer, nullable=False)
    completed_items = Column(Integer, default=0, nullable=False)
    failed_items = Column(Integer, default=0, nullable=False)
    progress = Column(Integer, default=0, nullable=False)  # 0-100
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    items = relationship("BatchItem", back_populates="job", cascade="all, delete-orphan", order_by="BatchItem.position")

    def __repr__(self):
        return f"<BatchJob(id={self.id}, status='{self.status}', progress={self.progress})>"


class BatchItem(Base):
    """One repository URL inside a batch job"""
    __tablename__ = "batch_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    url = Column(String, nullable=False)
    status = Column(String, default="pending", nullable=False)  # pending | analyzing | completed | error | cancelled
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="SET NULL"))
    analysis_id = Column(Integer, ForeignKey("repository_analyses.id", ondelete="SET NULL"))
    started_at = Column(DateTime)
    finished_at = Column(DateTime)

    job = relationship("BatchJob", back_populates="items")
    repository = relationship("Repository")
    analysis = relationship("RepositoryAnalysis")


# =============================================================================
# ANALYTICS
# =============================================================================

class AnalyticsEvent(Base):
    """Product and error events feeding the admin dashboards"""
    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_name = Column(String, nullable=False)
    event_category = Column(String, nullable=False)  # "analysis", "user", "billing", "error", ...
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    properties = Column(Text)  # JSON
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


# =============================================================================
# CODE REVIEW
# =============================================================================

class CodeReview(Base):
    """A saved AI code review of a repository or a pasted snippet"""
    __tablename__ = "code_reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    review_type = Column(String, nullable=False)  # repository | snippet
    content = Column(Text)  # snippet source, when review_type is snippet
    repository_name = Column(String)
    repository_url = Column(String)
    result = Column(Text, nullable=False)  # JSON review
    overall_score = Column(Float, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<CodeReview(id={self.id}, type='{self.review_type}', score={self.overall_score})>"
