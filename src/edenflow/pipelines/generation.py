from __future__ import annotations

import logging
from typing import Any

from ..errors import NotFound, QuotaExceeded, ScopeInvalid, ValidationError
from ..llm import LlmGateway
from ..models import ScrapedArticle
from ..prompts.chain import ChainRunner, Checkpoint, no_checkpoint
from ..prompts.repository import TemplateCache, check_template_ids, load_chain
from ..services.content_service import archive_prior_articles
from ..services.settings_service import SettingsCache, generation_limits, get_settings
from ..services.sources_service import get_source
from ..storage import (
    count_generated_articles_since,
    get_account,
    get_scraped_article,
    list_generation_candidates,
)
from ..utils import log_event, utc_now
from .analyze import analyze_articles

DEFAULT_MIN_RELEVANCE = 0.6
MAX_GENERATION_LIMIT = 50

logger = logging.getLogger("edenflow.generation")


def top_stories(
    conn: Any, account_id: str, min_score: float = DEFAULT_MIN_RELEVANCE, limit: int = 5
) -> list[ScrapedArticle]:
    return list_generation_candidates(conn, account_id, min_score, limit)


def validate_generation_payload(
    conn: Any, account_id: str, payload: dict[str, Any], default_limit: int = 5
) -> dict[str, Any]:
    """Normalise a ``content_generation`` payload.

    Accepts ``storyId`` or ``specificStoryId`` for a single article, else
    ``limit``. Template ids must be active templates of this account.
    """
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")
    story_id = payload.get("storyId") or payload.get("specificStoryId")
    if story_id is not None and not isinstance(story_id, str):
        raise ValidationError("storyId must be a string")
    limit = payload.get("limit", default_limit)
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError("limit must be a positive integer")
    template_ids = payload.get("templateIds")
    if template_ids is not None:
        if not isinstance(template_ids, list) or not template_ids:
            raise ValidationError("templateIds must be a non-empty list")
        check_template_ids(conn, account_id, template_ids)
    regenerate = bool(payload.get("regenerate", False))
    if regenerate and not story_id:
        raise ValidationError("regenerate requires storyId")
    return {
        "story_id": story_id,
        "limit": min(limit, MAX_GENERATION_LIMIT),
        "template_ids": template_ids,
        "regenerate": regenerate,
    }


def check_generation_quota(
    conn: Any, account_id: str, requested: int = 1, cache: SettingsCache | None = None
) -> int | None:
    """Raise ``QuotaExceeded`` when the account's daily generation cap is used up.

    Returns the remaining count, or ``None`` when rate limiting is off.
    """
    limits = generation_limits(conn, account_id, cache)
    if not limits.get("enable_rate_limiting"):
        return None
    cap = int(limits.get("daily_generation_limit") or 0)
    day_start = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
    used = count_generated_articles_since(
        conn, account_id, day_start.isoformat(timespec="microseconds")
    )
    remaining = cap - used
    if remaining < max(1, requested):
        raise QuotaExceeded("daily_generation_limit_reached", used=used, limit=cap)
    return remaining


def run_content_generation(
    conn: Any,
    account_id: str,
    payload: dict[str, Any],
    runner: ChainRunner,
    *,
    job_id: str | None = None,
    checkpoint: Checkpoint = no_checkpoint,
    refs: list[str] | None = None,
    template_cache: TemplateCache | None = None,
    settings_cache: SettingsCache | None = None,
    default_limit: int = 5,
    min_relevance: float = DEFAULT_MIN_RELEVANCE,
) -> dict[str, Any]:
    refs = refs if refs is not None else []
    options = validate_generation_payload(conn, account_id, payload, default_limit)
    account = get_account(conn, account_id)
    if account is None or not account.is_active:
        raise ScopeInvalid("account_not_active")

    # Versions are pinned here for the whole job.
    chain = load_chain(conn, account_id, options["template_ids"], template_cache)
    if not chain:
        raise ValidationError("no_active_templates")

    if options["story_id"]:
        story = get_scraped_article(conn, account_id, options["story_id"])
        if story is None:
            raise NotFound("story_not_found")
        if options["regenerate"]:
            _check_regeneration_allowed(conn, account_id, story, settings_cache)
            archive_prior_articles(conn, account_id, story.id)
        stories = [story]
    else:
        stories = top_stories(conn, account_id, min_relevance, options["limit"])

    generated: list[str] = []
    skipped: list[dict[str, Any]] = []
    for story in stories:
        checkpoint()
        if job_id:
            # a retried attempt replaces whatever the failed attempt left behind
            archive_prior_articles(conn, account_id, story.id, job_id)
        check_generation_quota(conn, account_id, 1, settings_cache)
        source = get_source(conn, account_id, story.source_id) if story.source_id else None
        outcome = runner.run(
            conn,
            account,
            story,
            chain,
            job_id=job_id,
            checkpoint=checkpoint,
            refs=refs,
            source_name=source.name if source else None,
        )
        generated.append(outcome.generated_article_id)
        skipped.extend(outcome.skipped)

    log_event(
        logger,
        logging.INFO,
        "content_generated",
        account_id=account_id,
        job_id=job_id,
        stories=len(stories),
        templates=len(chain),
        artifacts=len(refs),
    )
    return {
        "generated_article_ids": generated,
        "content_refs": list(refs),
        "skipped_templates": skipped,
        "template_version_ids": [step.version.id for step in chain],
    }


def run_full_cycle(
    conn: Any,
    account_id: str,
    payload: dict[str, Any],
    gateway: LlmGateway,
    runner: ChainRunner,
    *,
    job_id: str | None = None,
    checkpoint: Checkpoint = no_checkpoint,
    refs: list[str] | None = None,
    template_cache: TemplateCache | None = None,
    settings_cache: SettingsCache | None = None,
    analyze_limit: int = 20,
    default_limit: int = 5,
    min_relevance: float = DEFAULT_MIN_RELEVANCE,
) -> dict[str, Any]:
    limit = payload.get("limit", default_limit) if isinstance(payload, dict) else default_limit
    analysis = analyze_articles(
        conn,
        account_id,
        gateway,
        analyze_limit,
        job_id=job_id,
        checkpoint=checkpoint,
        settings_cache=settings_cache,
    )
    checkpoint()
    generation = run_content_generation(
        conn,
        account_id,
        {"limit": limit},
        runner,
        job_id=job_id,
        checkpoint=checkpoint,
        refs=refs,
        template_cache=template_cache,
        settings_cache=settings_cache,
        default_limit=default_limit,
        min_relevance=min_relevance,
    )
    return {"analysis": analysis, "generation": generation}


def _check_regeneration_allowed(
    conn: Any, account_id: str, story: ScrapedArticle, cache: SettingsCache | None
) -> None:
    if story.content_generation_eligible:
        return
    ui_display = get_settings(conn, account_id, "content_quality", cache).get("ui_display") or {}
    if ui_display.get("disable_regenerate_on_poor_quality"):
        raise ValidationError(
            "regeneration_disabled_poor_quality", issues=list(story.content_issues)
        )
