"""
RepoRadar API Schema Definitions

Pydantic models defining the API contract for every endpoint.
These models are the source of truth for what the backend accepts and returns.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


# =============================================================================
# ENUMS
# =============================================================================

class SubscriptionTier(str, Enum):
    """Subscription level gating limits and features"""
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class TeamRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class BatchJobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchItemStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class ApiPermission(str, Enum):
    READ = "read"
    WRITE = "write"


# =============================================================================
# AUTH
# =============================================================================

class RegisterRequest(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN, description="Account email (unique)")
    password: str = Field(..., description="Plaintext password, at least 8 characters")
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class LoginRequest(BaseModel):
    email: str = Field(..., description="Account email")
    password: str = Field(..., description="Plaintext password")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class UserInfo(BaseModel):
    """Public view of an account"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    subscription_tier: SubscriptionTier
    subscription_status: str
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserInfo
    token: str = Field(..., description="Bearer token for the Authorization header")
    expires_at: datetime


class ProfileUpdateRequest(BaseModel):
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class PasswordResetRequest(BaseModel):
    email: str


class PasswordResetConfirm(BaseModel):
    token: str
    new_password: str


# =============================================================================
# REPOSITORIES & ANALYSES
# =============================================================================

class RepositoryInfo(BaseModel):
    """Repository metadata as stored from GitHub"""
    id: int = Field(..., description="GitHub repository id")
    name: str
    full_name: str = Field(..., description="owner/name")
    owner: str
    description: str | None = None
    language: str | None = None
    stars: int = 0
    forks: int = 0
    watchers: int = 0
    html_url: str
    languages: dict[str, int] = Field(default_factory=dict, description="Language -> bytes mapping")
    topics: list[str] = Field(default_factory=list)
    last_analyzed: datetime | None = None
    analysis_count: int = 0


class AnalysisPoint(BaseModel):
    """A strength or weakness with its justification"""
    point: str
    reason: str


class Recommendation(BaseModel):
    suggestion: str
    reason: str
    impact: str


class AnalysisInfo(BaseModel):
    """AI scoring record for one repository (1-10 scale)"""
    id: int
    repository_id: int
    originality: float = Field(..., ge=1, le=10)
    completeness: float = Field(..., ge=1, le=10)
    marketability: float = Field(..., ge=1, le=10)
    monetization: float = Field(..., ge=1, le=10)
    usefulness: float = Field(..., ge=1, le=10)
    overall_score: float = Field(..., ge=1, le=10)
    summary: str
    strengths: list[AnalysisPoint] = Field(default_factory=list)
    weaknesses: list[AnalysisPoint] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)
    score_explanations: dict[str, str] = Field(default_factory=dict)
    is_fallback: bool = Field(False, description="True when the AI provider was unavailable")
    created_at: datetime
    updated_at: datetime


class SimilarRepositoryInfo(BaseModel):
    repository: RepositoryInfo
    similarity: float = Field(..., ge=0, le=1)


class AnalyzeRequest(BaseModel):
    """Request body for POST /api/repositories/analyze"""
    url: str = Field(..., description="GitHub repository URL or owner/repo")


class AnalyzeResponse(BaseModel):
    repository: RepositoryInfo
    analysis: AnalysisInfo
    similar_repositories: list[SimilarRepositoryInfo] = Field(default_factory=list)
    cached: bool = Field(False, description="True when a stored analysis was returned")


class RepositoryDetailResponse(BaseModel):
    repository: RepositoryInfo
    analysis: AnalysisInfo | None = None
    similar_repositories: list[SimilarRepositoryInfo] = Field(default_factory=list)
    is_saved: bool = False


class RecentAnalysisItem(BaseModel):
    repository: RepositoryInfo
    analysis: AnalysisInfo


class RecentAnalysesResponse(BaseModel):
    items: list[RecentAnalysisItem]
    page: int
    page_size: int
    total: int


class FindSimilarRequest(BaseModel):
    repository_id: int


class FindSimilarResponse(BaseModel):
    repositories: list[str] = Field(default_factory=list, description="owner/repo names")
    reasoning: str = ""
    similarity_scores: dict[str, float] = Field(default_factory=dict)


class CompareRequest(BaseModel):
    repository_ids: list[int] = Field(..., min_length=2, max_length=4)


class CompareItem(BaseModel):
    repository: RepositoryInfo
    analysis: AnalysisInfo


class CompareResponse(BaseModel):
    items: list[CompareItem]
    best: dict[str, int] = Field(..., description="metric -> repository id with the highest score")


# =============================================================================
# BATCH ANALYSIS
# =============================================================================

class BatchCreateRequest(BaseModel):
    urls: list[str] = Field(..., min_length=1, description="Repository URLs to analyze")


class BatchItemInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    position: int
    url: str
    status: BatchItemStatus
    attempts: int
    last_error: str | None = None
    repository_id: int | None = None
    analysis_id: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class BatchJobInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: BatchJobStatus
    progress: int = Field(..., ge=0, le=100)
    total_items: int
    completed_items: int
    failed_items: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class BatchSummary(BaseModel):
    total_repositories: int
    successful_analyses: int
    failed_analyses: int
    average_score: float | None = None
    completed_at: datetime | None = None


class BatchJobDetail(BatchJobInfo):
    items: list[BatchItemInfo] = Field(default_factory=list)
    summary: BatchSummary


class BatchStats(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int


# =============================================================================
# LIBRARY: BOOKMARKS, TAGS, COLLECTIONS, PREFERENCES
# =============================================================================

class BookmarkCreate(BaseModel):
    repository_id: int
    notes: str | None = None


class BookmarkInfo(BaseModel):
    id: int
    repository: RepositoryInfo
    notes: str | None = None
    created_at: datetime


class TagCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field("#FF6B35", pattern=HEX_COLOR_PATTERN)


class TagInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str
    created_at: datetime


class TagAssign(BaseModel):
    tag_id: int


class CollectionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    is_public: bool = False
    icon: str = "folder"
    color: str = Field("#FF6B35", pattern=HEX_COLOR_PATTERN)


class CollectionUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    description: str | None = None
    is_public: bool | None = None
    icon: str | None = None
    color: str | None = Field(None, pattern=HEX_COLOR_PATTERN)


class CollectionItemCreate(BaseModel):
    repository_id: int
    notes: str | None = None


class CollectionItemInfo(BaseModel):
    id: int
    repository: RepositoryInfo
    position: int
    notes: str | None = None
    added_at: datetime


class CollectionInfo(BaseModel):
    id: int
    user_id: int
    name: str
    description: str | None = None
    is_public: bool
    icon: str
    color: str
    item_count: int = 0
    created_at: datetime
    updated_at: datetime


class CollectionDetail(CollectionInfo):
    items: list[CollectionItemInfo] = Field(default_factory=list)


class PreferencesUpdate(BaseModel):
    preferred_languages: list[str] | None = None
    preferred_topics: list[str] | None = None
    excluded_topics: list[str] | None = None
    email_notifications: bool | None = None
    ai_recommendations: bool | None = None


class PreferencesInfo(BaseModel):
    preferred_languages: list[str] = Field(default_factory=list)
    preferred_topics: list[str] = Field(default_factory=list)
    excluded_topics: list[str] = Field(default_factory=list)
    email_notifications: bool = True
    ai_recommendations: bool = True


class RecommendationItem(BaseModel):
    repository: str = Field(..., description="owner/repo")
    reason: str
    confidence: float = Field(..., ge=0, le=1)


class AskRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=2000)
    repository_id: int | None = Field(None, description="Repository to use as context")


class AskResponse(BaseModel):
    answer: str


class ScoreTrendPoint(BaseModel):
    date: str
    average_score: float
    count: int


class AnalyticsDashboard(BaseModel):
    total_analyses: int
    average_scores: dict[str, float] = Field(default_factory=dict, description="metric -> mean score")
    language_breakdown: dict[str, int] = Field(default_factory=dict)
    bookmarks: int = 0
    collections: int = 0
    score_trend: list[ScoreTrendPoint] | None = Field(None, description="Requires advanced_analytics")


# =============================================================================
# TEAMS
# =============================================================================

class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None


class TeamInfo(BaseModel):
    id: int
    name: str
    description: str | None = None
    owner_id: int
    role: TeamRole = Field(..., description="The caller's role in the team")
    member_count: int
    created_at: datetime


class TeamMemberInfo(BaseModel):
    id: int
    user_id: int
    email: str
    role: TeamRole
    joined_at: datetime


class InviteRequest(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    role: TeamRole = TeamRole.MEMBER


class InvitationInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    team_id: int
    email: str
    role: TeamRole
    token: str
    expires_at: datetime


class AcceptInvitationRequest(BaseModel):
    token: str


class RoleUpdate(BaseModel):
    role: TeamRole


class ShareAnalysisRequest(BaseModel):
    analysis_id: int


# =============================================================================
# DEVELOPER API
# =============================================================================

class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    permissions: list[ApiPermission] = Field(default_factory=lambda: [ApiPermission.READ])
    rate_limit: int = Field(1000, ge=1, le=100_000, description="Requests per hour")
    expires_in_days: int | None = Field(None, ge=1, le=3650)


class ApiKeyInfo(BaseModel):
    id: int
    name: str
    key_prefix: str
    permissions: list[ApiPermission]
    rate_limit: int
    is_active: bool
    last_used_at: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime


class ApiKeyCreated(ApiKeyInfo):
    key: str = Field(..., description="Plaintext key. Shown only once.")


class WebhookCreate(BaseModel):
    url: str = Field(..., description="HTTPS endpoint receiving events")
    events: list[str] = Field(default_factory=lambda: ["repository.analyzed"])

    @field_validator("url")
    @classmethod
    def require_https(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("Webhook URL must use https://")
        return v


class WebhookInfo(BaseModel):
    id: int
    url: str
    events: list[str]
    is_active: bool
    last_triggered_at: datetime | None = None
    failure_count: int
    created_at: datetime


class WebhookCreated(WebhookInfo):
    secret: str = Field(..., description="Signing secret. Shown only once.")


class UsageStats(BaseModel):
    total_requests: int
    requests_last_hour: int
    requests_last_24h: int
    average_response_time_ms: float
    by_endpoint: dict[str, int]
    by_status: dict[str, int]


# =============================================================================
# BILLING
# =============================================================================

class CheckoutRequest(BaseModel):
    price_id: str


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


class SubscriptionStatus(BaseModel):
    tier: SubscriptionTier
    status: str
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    stripe_customer_id: str | None = None


class PlanInfo(BaseModel):
    tier: SubscriptionTier
    name: str
    price_cents: int
    interval: str
    price_id: str | None = None
    features: list[str]


class InvoiceInfo(BaseModel):
    id: str
    amount_paid: int
    currency: str
    status: str | None = None
    created: datetime
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None


# =============================================================================
# DOCS
# =============================================================================

class DocMetadata(BaseModel):
    title: str
    description: str | None = None
    last_updated: str | None = None
    author: str | None = None
    tags: list[str] = Field(default_factory=list)


class DocSummary(BaseModel):
    category: str
    slug: str
    metadata: DocMetadata


class DocPage(DocSummary):
    content: str


class DocCategory(BaseModel):
    name: str
    docs: list[DocSummary]


# =============================================================================
# CODE REVIEW
# =============================================================================

class ReviewType(str, Enum):
    REPOSITORY = "repository"
    SNIPPET = "snippet"


class CodeReviewRequest(BaseModel):
    type: ReviewType
    content: str = Field(..., min_length=1, description="Repository URL, or the code itself for snippets")
    github_token: str | None = Field(None, description="Optional token for private repositories")


class CodeIssue(BaseModel):
    type: str = "suggestion"
    severity: str = "low"
    line: int | None = None
    message: str
    suggestion: str | None = None
    file: str | None = None
    category: str | None = None


class CodeReviewResult(BaseModel):
    overallScore: int = Field(..., ge=0, le=100)
    codeQuality: int = Field(..., ge=0, le=100)
    security: int = Field(..., ge=0, le=100)
    performance: int = Field(..., ge=0, le=100)
    maintainability: int = Field(..., ge=0, le=100)
    testCoverage: int = Field(..., ge=0, le=100)
    issues: list[CodeIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    positives: list[str] = Field(default_factory=list)
    linesOfCode: int = 0
    is_fallback: bool = False
    files: list[str] = Field(default_factory=list, description="Paths that were reviewed")


class ViewCodeRequest(BaseModel):
    repo_url: str
    file_path: str = Field(..., min_length=1)
    line: int | None = None
    github_token: str | None = None


class ViewCodeResponse(BaseModel):
    content: str
    file_path: str
    line: int | None = None
    repo_url: str
    file_url: str


class CreateFixRequest(BaseModel):
    repo_url: str
    file_path: str = Field(..., min_length=1)
    issue: str = Field(..., min_length=1)
    suggestion: str | None = None
    line: int | None = None
    github_token: str | None = Field(None, description="Token with repo scope, required to open the pull request")


class CreateFixResponse(BaseModel):
    pull_request_number: int
    pull_request_url: str
    branch: str


class SaveReviewRequest(BaseModel):
    type: ReviewType
    content: str | None = None
    repository_name: str | None = None
    repository_url: str | None = None
    result: CodeReviewResult


class SavedReviewInfo(BaseModel):
    id: int
    type: ReviewType
    content: str | None = None
    repository_name: str | None = None
    repository_url: str | None = None
    overall_score: float
    result: CodeReviewResult
    created_at: datetime


# =============================================================================
# ADMIN
# =============================================================================

class HealthMetrics(BaseModel):
    status: str = Field(..., description="healthy | degraded | unhealthy")
    database: bool
    database_latency_ms: float
    ai_enabled: bool
    billing_enabled: bool
    batch_queue_running: bool
    uptime_seconds: int
    version: str


class SystemMetrics(BaseModel):
    requests_last_hour: int
    errors_last_hour: int
    error_rate: float = Field(..., description="Errors per request over the last hour, 0-1")
    errors_by_hour: dict[str, int]
    memory_max_rss_mb: float | None = None
    load_average: list[float] = Field(default_factory=list)


class UserActivityMetrics(BaseModel):
    total_users: int
    new_users_last_7_days: int
    active_users_last_24h: int
    active_users_last_7_days: int
    active_users_last_30_days: int
    users_by_tier: dict[str, int]
    top_actions: dict[str, int]
