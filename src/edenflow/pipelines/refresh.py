from __future__ import annotations

import logging
from typing import Any

from ..errors import ValidationError
from ..ingest import FeedIngestor
from ..services.sources_service import record_refresh, require_source, source_to_dict
from ..utils import log_event

logger = logging.getLogger("edenflow.refresh")


def run_source_refresh(
    conn: Any, account_id: str, payload: dict[str, Any], ingestor: FeedIngestor
) -> dict[str, Any]:
    source_id = payload.get("sourceId") if isinstance(payload, dict) else None
    if not source_id or not isinstance(source_id, str):
        raise ValidationError("sourceId is required")
    source = require_source(conn, account_id, source_id)
    try:
        result = ingestor.refresh(conn, account_id, source)
    except Exception as exc:
        log_event(
            logger,
            logging.WARNING,
            "source_refresh_failed",
            account_id=account_id,
            source_id=source_id,
            error=str(exc),
        )
        record_refresh(conn, account_id, source_id, error=str(exc) or type(exc).__name__)
        raise
    updated = record_refresh(conn, account_id, source_id)
    return {
        "source": source_to_dict(updated),
        "found": result.found_count,
        "new_article_ids": [item["id"] for item in result.new_articles],
        "skipped_duplicates": result.skipped_duplicates,
        "skipped_missing_url": result.skipped_missing_url,
    }
