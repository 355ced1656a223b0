from __future__ import annotations

import logging
from typing import Any, Callable

from ..errors import ParseFailure, TransientUpstream
from ..llm import LlmGateway
from ..models import ScrapedArticle
from ..prompts.parsers import load_json
from ..quality import Scorer, assess, default_scorer
from ..services.settings_service import SettingsCache, get_settings
from ..storage import (
    insert_ai_response_log,
    list_articles_pending_analysis,
    mark_ai_response_parse_error,
    update_article_analysis,
    update_article_quality,
)
from ..utils import log_event

ANALYSIS_CATEGORY = "analysis"
ANALYSIS_MAX_TOKENS = 512
MAX_CONTENT_CHARS = 8000
FALLBACK_SUMMARY_CHARS = 300

ANALYSIS_SYSTEM_MESSAGE = (
    "You summarize news articles for a faith-based editorial team. "
    "Be concise and factual. Return JSON with keys: summary, keywords, relevance_score. "
    "relevance_score is a number between 0 and 1."
)

logger = logging.getLogger("edenflow.analysis")


def analyze_articles(
    conn: Any,
    account_id: str,
    gateway: LlmGateway,
    limit: int = 20,
    *,
    job_id: str | None = None,
    checkpoint: Callable[[], None] | None = None,
    settings_cache: SettingsCache | None = None,
    scorer: Scorer = default_scorer,
) -> dict[str, Any]:
    """Summarize and score the account's oldest unanalyzed articles.

    A response that is not the expected JSON still moves the article on,
    with a summary cut from its text, no keywords and a zero relevance score.
    """
    quality_settings = get_settings(conn, account_id, "content_quality", settings_cache)
    analyzed: list[str] = []
    fallbacks = 0
    for article in list_articles_pending_analysis(conn, account_id, limit):
        if checkpoint is not None:
            checkpoint()
        result, used_fallback = _summarize(conn, account_id, gateway, article, job_id)
        fallbacks += int(used_fallback)
        update_article_analysis(
            conn,
            account_id,
            article.id,
            result["summary"],
            result["keywords"],
            result["relevance_score"],
        )
        assessment = assess(
            article.title, article.full_text or result["summary"], quality_settings, scorer=scorer
        )
        update_article_quality(conn, account_id, article.id, assessment)
        analyzed.append(article.id)

    log_event(
        logger,
        logging.INFO,
        "articles_analyzed",
        account_id=account_id,
        count=len(analyzed),
        fallbacks=fallbacks,
    )
    return {"analyzed": len(analyzed), "fallbacks": fallbacks, "article_ids": analyzed}


def build_analysis_prompt(article: ScrapedArticle) -> str:
    content = (article.full_text or article.summary or "")[:MAX_CONTENT_CHARS]
    return (
        f"Title: {article.title}\n"
        f"Published: {article.publication_date or 'unknown'}\n"
        f"URL: {article.url}\n\n"
        f"Content:\n{content}\n\n"
        "Respond with JSON only."
    )


def parse_analysis(text: str, stop_reason: str) -> dict[str, Any]:
    if stop_reason == "length":
        raise ParseFailure("response_truncated", is_truncated=True)
    data = load_json(text)
    if not isinstance(data, dict):
        raise ParseFailure("analysis_not_object")
    summary = str(data.get("summary") or "").strip()
    if not summary:
        raise ParseFailure("analysis_missing_summary")
    keywords = data.get("keywords") or []
    if isinstance(keywords, str):
        keywords = [part.strip() for part in keywords.split(",")]
    try:
        score = float(data.get("relevance_score") or 0.0)
    except (TypeError, ValueError) as exc:
        raise ParseFailure("analysis_invalid_score") from exc
    return {
        "summary": summary,
        "keywords": [str(item) for item in keywords if str(item).strip()],
        "relevance_score": min(1.0, max(0.0, score)),
    }


def fallback_analysis(article: ScrapedArticle) -> dict[str, Any]:
    text = (article.full_text or article.title or "").strip()
    return {"summary": text[:FALLBACK_SUMMARY_CHARS], "keywords": [], "relevance_score": 0.0}


def _summarize(
    conn: Any,
    account_id: str,
    gateway: LlmGateway,
    article: ScrapedArticle,
    job_id: str | None,
) -> tuple[dict[str, Any], bool]:
    prompt = build_analysis_prompt(article)
    try:
        response = gateway.generate(prompt, ANALYSIS_SYSTEM_MESSAGE, ANALYSIS_MAX_TOKENS)
    except TransientUpstream as exc:
        insert_ai_response_log(
            conn,
            account_id,
            ANALYSIS_CATEGORY,
            prompt,
            None,
            exc.stop_reason,
            False,
            max_output_tokens=ANALYSIS_MAX_TOKENS,
            job_id=job_id,
        )
        raise
    log_id = insert_ai_response_log(
        conn,
        account_id,
        ANALYSIS_CATEGORY,
        prompt,
        response.text,
        response.stop_reason,
        response.is_truncated,
        max_output_tokens=ANALYSIS_MAX_TOKENS,
        tokens_used_input=response.tokens_used_input,
        tokens_used_output=response.tokens_used_output,
        job_id=job_id,
    )
    try:
        return parse_analysis(response.text, response.stop_reason), False
    except ParseFailure as exc:
        mark_ai_response_parse_error(conn, account_id, log_id, exc.message, exc.is_truncated)
        log_event(
            logger,
            logging.WARNING,
            "analysis_parse_failure",
            account_id=account_id,
            article_id=article.id,
            error=exc.message,
        )
        return fallback_analysis(article), True
