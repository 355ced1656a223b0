from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser
from bs4 import BeautifulSoup

from .config import IngestConfig
from .errors import TransientUpstream
from .models import Source
from .storage import insert_scraped_article
from .utils import extract_published_at, log_event, normalize_url, utc_now_iso

Fetcher = Callable[[str], bytes]


@dataclass(frozen=True)
class RefreshResult:
    source_id: str
    found_count: int
    new_articles: list[dict[str, Any]] = field(default_factory=list)
    skipped_duplicates: int = 0
    skipped_missing_url: int = 0


class FeedIngestor:
    """Pulls a source's RSS/Atom feed and stores unseen entries as scraped articles."""

    def __init__(self, config: IngestConfig, fetcher: Fetcher | None = None) -> None:
        self.config = config
        self.fetcher = fetcher or self._fetch_url
        self.logger = logging.getLogger("edenflow.ingest")

    def refresh(self, conn: Any, account_id: str, source: Source) -> RefreshResult:
        feed_url = source.rss_url or source.url
        content = self.fetcher(feed_url)
        parsed = feedparser.parse(content)
        entries = parsed.entries or []
        if parsed.bozo and not entries:
            raise TransientUpstream(f"feed_parse_error: {parsed.bozo_exception}")
        if parsed.bozo:
            log_event(
                self.logger,
                logging.WARNING,
                "feed_parse_warning",
                source_id=source.id,
                error=str(parsed.bozo_exception),
            )

        fetched_at = utc_now_iso()
        new_articles: list[dict[str, Any]] = []
        duplicates = 0
        missing_url = 0
        for entry in entries:
            link = entry.get("link") or entry.get("id")
            if not link:
                missing_url += 1
                continue
            url = normalize_url(
                link,
                strip_tracking_params=self.config.strip_tracking_params,
                tracking_params=self.config.tracking_params,
            )
            title = (entry.get("title") or "").strip() or url
            raw_text = entry_text(entry)
            published_at = extract_published_at(entry, fetched_at)
            article_id = insert_scraped_article(
                conn,
                account_id,
                source.id,
                title,
                url,
                full_text=raw_text or None,
                summary=None,
                publication_date=published_at,
            )
            if article_id is None:
                duplicates += 1
                continue
            new_articles.append(
                {
                    "id": article_id,
                    "url": url,
                    "title": title,
                    "published_at": published_at,
                    "raw_text": raw_text,
                }
            )

        log_event(
            self.logger,
            logging.INFO,
            "source_refreshed",
            account_id=account_id,
            source_id=source.id,
            found_count=len(entries),
            new_count=len(new_articles),
            duplicates=duplicates,
        )
        return RefreshResult(
            source_id=source.id,
            found_count=len(entries),
            new_articles=new_articles,
            skipped_duplicates=duplicates,
            skipped_missing_url=missing_url,
        )

    def _fetch_url(self, url: str) -> bytes:
        headers = {"User-Agent": self.config.user_agent}
        attempt = 0
        while True:
            try:
                request = Request(url, headers=headers)
                with urlopen(request, timeout=self.config.timeout_seconds) as response:
                    return response.read()
            except HTTPError as exc:
                raise TransientUpstream(f"feed_http_error {exc.code}") from exc
            except (URLError, TimeoutError) as exc:
                if attempt >= self.config.max_retries:
                    raise TransientUpstream("feed_unreachable") from exc
                time.sleep(self.config.backoff_seconds * (attempt + 1))
                attempt += 1


def entry_text(entry: Any) -> str:
    parts = entry.get("content") or []
    html = ""
    if parts:
        html = " ".join(str(part.get("value") or "") for part in parts)
    html = html or entry.get("summary") or entry.get("description") or ""
    return html_to_text(html)


def html_to_text(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside"]):
        tag.decompose()
    return re.sub(r"\s+", " ", soup.get_text(" ", strip=True)).strip()
