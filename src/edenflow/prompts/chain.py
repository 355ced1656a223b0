from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..dualwrite import DualWriter
from ..errors import NotFound, ParseFailure, TransientUpstream
from ..images import ImageProvider
from ..llm import LlmGateway
from ..models import Account, ChainStep, ScrapedArticle
from ..quality import Scorer, assess, default_scorer, needs_manual_review
from ..services.settings_service import SettingsCache, get_settings
from ..storage import (
    create_generated_article,
    get_generated_article,
    insert_ai_response_log,
    mark_ai_response_parse_error,
    set_article_status,
    set_generated_article_quality,
)
from ..utils import log_event, utc_now_iso
from .parsers import parse_output
from .repository import get_template, get_version
from .resolver import build_context, render_prompt

Checkpoint = Callable[[], None]


def no_checkpoint() -> None:
    return None


@dataclass
class ChainOutcome:
    generated_article_id: str
    content_refs: list[str] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    quality: dict[str, Any] | None = None


class ChainRunner:
    """Executes an account's pinned template chain for one scraped article.

    Each step renders its prompt, calls the gateway, parses the output and
    dual-writes the artifacts. ``checkpoint`` runs between templates, before
    every model call and before every write; it raises to abort the chain.
    Written artifact ids are appended to ``refs`` as they commit, so a caller
    still sees them when a later step fails.
    """

    def __init__(
        self,
        gateway: LlmGateway,
        writer: DualWriter,
        images: ImageProvider | None = None,
        settings_cache: SettingsCache | None = None,
        scorer: Scorer = default_scorer,
    ) -> None:
        self.gateway = gateway
        self.writer = writer
        self.images = images
        self.settings_cache = settings_cache
        self.scorer = scorer
        self.logger = logging.getLogger("edenflow.chain")

    def run(
        self,
        conn: Any,
        account: Account,
        article: ScrapedArticle,
        chain: list[ChainStep],
        *,
        job_id: str | None = None,
        checkpoint: Checkpoint = no_checkpoint,
        refs: list[str] | None = None,
        source_name: str | None = None,
    ) -> ChainOutcome:
        refs = refs if refs is not None else []
        checkpoint()
        generated_id = create_generated_article(
            conn,
            account.id,
            article.id,
            article.title,
            job_id=job_id,
            template_version_ids=[step.version.id for step in chain],
        )
        outcome = ChainOutcome(generated_article_id=generated_id, content_refs=refs)
        preferences = get_settings(conn, account.id, "prompt_templates", self.settings_cache)[
            "template_preferences"
        ]
        prior: dict[str, Any] = {}
        for step in chain:
            checkpoint()
            items = self._run_step(
                conn,
                account,
                article,
                step,
                generated_id,
                prior,
                preferences,
                job_id=job_id,
                checkpoint=checkpoint,
                source_name=source_name,
                outcome=outcome,
            )
            if items is None:
                continue
            checkpoint()
            result = self.writer.write(
                conn,
                account.id,
                generated_id,
                step.template.category,
                items,
                self._metadata(step, article, job_id),
            )
            if result.content_id:
                refs.append(result.content_id)
            else:
                refs.extend(result.legacy_ids)
            prior[step.template.category] = dict(items[0], items=items)
            log_event(
                self.logger,
                logging.INFO,
                "template_executed",
                account_id=account.id,
                template_id=step.template.id,
                version_id=step.version.id,
                category=step.template.category,
                items=len(items),
            )

        set_article_status(conn, account.id, article.id, "processed")
        outcome.quality = self._assess(conn, account.id, generated_id)
        return outcome

    def _run_step(
        self,
        conn: Any,
        account: Account,
        article: ScrapedArticle,
        step: ChainStep,
        generated_id: str,
        prior: dict[str, Any],
        preferences: dict[str, Any],
        *,
        job_id: str | None,
        checkpoint: Checkpoint,
        source_name: str | None,
        outcome: ChainOutcome,
    ) -> list[dict[str, Any]] | None:
        template, version = step.template, step.version
        context = build_context(
            article=article,
            account=account,
            blog_id=generated_id,
            prior=prior,
            source_name=source_name,
        )
        prompt, system_message = render_prompt(version, context)
        max_tokens = _max_tokens(version.parameters, preferences)
        checkpoint()
        log_fields = {
            "generated_article_id": generated_id,
            "job_id": job_id,
            "template_id": template.id,
            "template_version_id": version.id,
        }
        try:
            response = self.gateway.generate(prompt, system_message, max_tokens)
        except TransientUpstream as exc:
            insert_ai_response_log(
                conn,
                account.id,
                template.category,
                prompt,
                None,
                exc.stop_reason,
                False,
                max_output_tokens=max_tokens,
                **log_fields,
            )
            raise
        log_id = insert_ai_response_log(
            conn,
            account.id,
            template.category,
            prompt,
            response.text,
            response.stop_reason,
            response.is_truncated,
            max_output_tokens=max_tokens,
            tokens_used_input=response.tokens_used_input,
            tokens_used_output=response.tokens_used_output,
            **log_fields,
        )
        try:
            items = parse_output(
                template.parsing_method, response.text, response.stop_reason, version.parameters
            )
        except ParseFailure as exc:
            mark_ai_response_parse_error(conn, account.id, log_id, exc.message, exc.is_truncated)
            log_event(
                self.logger,
                logging.WARNING,
                "parse_failure",
                account_id=account.id,
                template_id=template.id,
                method=template.parsing_method,
                truncated=exc.is_truncated,
                policy=template.on_parse_error,
            )
            if template.on_parse_error == "skip":
                outcome.skipped.append(
                    {"template_id": template.id, "category": template.category, "error": exc.message}
                )
                return None
            raise
        if template.media_type == "image" and self.images is not None:
            items = [self._attach_image(item) for item in items]
        return items

    def _attach_image(self, item: dict[str, Any]) -> dict[str, Any]:
        query = str(item.get("query") or item.get("text") or item.get("value") or "").strip()
        found = self.images.find_image(query) if query else None
        if found is None or not found.get("source_url"):
            return {"query": query, "source_url": None, "cdn_url": None, "alt_text": query}
        alt_text = str((found.get("meta") or {}).get("alt") or query)
        published = self.images.publish(found["source_url"], alt_text)
        return {
            "query": query,
            "source_url": found["source_url"],
            "cdn_url": published["cdn_url"],
            "alt_text": published.get("alt_text") or alt_text,
        }

    def _metadata(self, step: ChainStep, article: ScrapedArticle, job_id: str | None) -> dict[str, Any]:
        return {
            "template_id": step.template.id,
            "template_name": step.template.name,
            "template_version_id": step.version.id,
            "version_number": step.version.version_number,
            "parsing_method": step.template.parsing_method,
            "media_type": step.template.media_type,
            "article_title": article.title,
            "job_id": job_id,
            "generated_at": utc_now_iso(),
        }

    def _assess(self, conn: Any, account_id: str, generated_id: str) -> dict[str, Any] | None:
        generated = get_generated_article(conn, account_id, generated_id)
        if generated is None:
            return None
        settings = get_settings(conn, account_id, "content_quality", self.settings_cache)
        quality = assess(generated.title, generated.body_draft, settings, scorer=self.scorer)
        quality["needs_manual_review"] = needs_manual_review(quality, settings)
        quality["assessed_at"] = utc_now_iso()
        set_generated_article_quality(conn, account_id, generated_id, quality)
        return quality


def dry_run_template_version(
    conn: Any,
    account_id: str,
    template_id: str,
    version_id: str,
    gateway: LlmGateway,
    test_variables: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Render a version against test variables and make one unlogged model call."""
    template = get_template(conn, account_id, template_id)
    version = get_version(conn, account_id, version_id)
    if template is None or version is None or version.template_id != template_id:
        raise NotFound("template_version_not_found")
    context = build_context(blog_id="test", extra=test_variables or {})
    prompt, system_message = render_prompt(version, context)
    response = gateway.generate(prompt, system_message, _max_tokens(version.parameters, {}))
    result: dict[str, Any] = {
        "prompt": prompt,
        "system_message": system_message,
        "response": {
            "text": response.text,
            "stop_reason": response.stop_reason,
            "is_truncated": response.is_truncated,
            "tokens_used_input": response.tokens_used_input,
            "tokens_used_output": response.tokens_used_output,
        },
        "parsed": None,
        "parse_error": None,
    }
    try:
        result["parsed"] = parse_output(
            template.parsing_method, response.text, response.stop_reason, version.parameters
        )
    except ParseFailure as exc:
        result["parse_error"] = exc.message
    return result


def _max_tokens(parameters: dict[str, Any], preferences: dict[str, Any]) -> int | None:
    for key in ("max_tokens", "max_output_tokens"):
        value = (parameters or {}).get(key)
        if isinstance(value, int) and value > 0:
            return value
    value = preferences.get("default_max_tokens")
    return int(value) if value else None
