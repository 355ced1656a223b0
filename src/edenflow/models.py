from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

JOB_TYPES = ("full_cycle", "content_generation", "analyze_articles", "source_refresh")
JOB_STATUSES = ("queued", "processing", "completed", "failed", "cancelled")
TERMINAL_JOB_STATUSES = ("completed", "failed", "cancelled")

ACCOUNT_ROLES = ("owner", "admin", "editor", "viewer")
GLOBAL_ROLES = ("super_admin", "support", "billing_admin")

MEDIA_TYPES = ("text", "video", "audio", "image")
PARSING_METHODS = (
    "generic",
    "structured",
    "json",
    "social_media",
    "video_script",
    "prayer_points",
)
PARSE_ERROR_POLICIES = ("abort", "skip")

ARTICLE_STATUSES = ("scraped", "analyzed", "processed", "rejected")
CONTENT_STATUSES = ("draft", "review_pending", "approved", "rejected", "published", "archived")
TERMINAL_CONTENT_STATUSES = ("published", "archived")
INVITATION_STATUSES = ("pending", "accepted", "cancelled", "expired")


@dataclass(frozen=True)
class Organization:
    id: str
    name: str
    is_active: bool
    settings: dict[str, Any]


@dataclass(frozen=True)
class Account:
    id: str
    organization_id: str
    name: str
    slug: str
    is_active: bool
    settings: dict[str, Any]


@dataclass(frozen=True)
class Scope:
    organization_id: str
    account_id: str
    user_id: str | None
    role: str
    email: str | None = None
    global_roles: tuple[str, ...] = ()


@dataclass(frozen=True)
class Source:
    id: str
    account_id: str
    name: str
    url: str
    rss_url: str | None
    is_active: bool
    last_checked: str | None
    last_error: str | None
    success_rate: float
    articles_last_24h: int
    total_articles: int


@dataclass(frozen=True)
class ScrapedArticle:
    id: str
    account_id: str
    source_id: str | None
    title: str
    url: str
    full_text: str | None
    summary: str | None
    keywords: list[str]
    publication_date: str | None
    relevance_score: float | None
    status: str
    content_quality_score: float | None
    content_quality_tier: str | None
    content_generation_eligible: bool
    content_issues: list[str]
    scraped_at: str


@dataclass(frozen=True)
class GeneratedArticle:
    id: str
    account_id: str
    based_on_scraped_article_id: str | None
    title: str
    body_draft: str
    body_final: str | None
    meta_description: str | None
    tags: list[str]
    word_count: int
    status: str
    quality: dict[str, Any] | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class GeneratedContent:
    id: str
    account_id: str
    based_on_gen_article_id: str | None
    prompt_category: str
    content_data: list[Any]
    metadata: dict[str, Any]
    status: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PromptTemplate:
    id: str
    account_id: str
    name: str
    description: str | None
    category: str
    media_type: str
    parsing_method: str
    on_parse_error: str
    current_version_id: str | None
    execution_order: int
    is_active: bool
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PromptTemplateVersion:
    id: str
    template_id: str
    account_id: str
    version_number: int
    prompt_content: str
    system_message: str | None
    parameters: dict[str, Any]
    notes: str | None
    created_by: str | None
    created_at: str


@dataclass(frozen=True)
class ChainStep:
    """A template with its version pinned for the duration of one job."""

    template: PromptTemplate
    version: PromptTemplateVersion


@dataclass(frozen=True)
class Job:
    id: str
    account_id: str
    job_type: str
    status: str
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    lease_expires_at: str | None
    locked_by: str | None
    cancel_requested: bool
    not_before: str | None
    created_at: str
    started_at: str | None
    finished_at: str | None
    last_error: dict[str, Any] | None
    result_refs: list[str] = field(default_factory=list)
    result: dict[str, Any] | None = None
    queued_at: str | None = None


@dataclass(frozen=True)
class MigrationRecord:
    id: str
    account_id: str
    content_type: str
    legacy_id: str
    modern_content_id: str
    migration_version: str
    migration_date: str


@dataclass(frozen=True)
class Invitation:
    id: str
    account_id: str
    invited_email: str
    role: str
    invited_by: str | None
    token: str
    expires_at: str
    status: str
    created_at: str


@dataclass(frozen=True)
class LlmResponse:
    text: str
    tokens_used_input: int
    tokens_used_output: int
    stop_reason: str
    is_truncated: bool


@dataclass(frozen=True)
class WriteResult:
    content_id: str | None
    legacy_ids: list[str]
    category: str
