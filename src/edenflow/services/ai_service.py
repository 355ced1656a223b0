from __future__ import annotations

from typing import Any

from ..config import Config
from ..errors import NotFound, ValidationError
from ..llm import HttpLlmGateway, LlmGateway
from ..security.secrets import decrypt_secret, encrypt_secret
from ..storage import get_account, list_ai_response_logs
from ..utils import utc_now_iso


def set_provider_secret(conn: Any, account_id: str, api_key: str) -> dict[str, Any]:
    api_key = (api_key or "").strip()
    if not api_key:
        raise ValidationError("api_key is required")
    if get_account(conn, account_id) is None:
        raise NotFound("account_not_found")
    key_id, ciphertext = encrypt_secret(api_key, _account_aad(account_id))
    last4 = api_key[-4:] if len(api_key) >= 4 else api_key
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO provider_secrets (account_id, key_id, ciphertext, last4, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(account_id) DO UPDATE SET
            key_id=excluded.key_id,
            ciphertext=excluded.ciphertext,
            last4=excluded.last4,
            updated_at=excluded.updated_at
        """,
        (account_id, key_id, ciphertext, last4, now),
    )
    conn.commit()
    return provider_secret_status(conn, account_id)


def clear_provider_secret(conn: Any, account_id: str) -> None:
    conn.execute("DELETE FROM provider_secrets WHERE account_id = ?", (account_id,))
    conn.commit()


def provider_secret_status(conn: Any, account_id: str) -> dict[str, Any]:
    row = conn.execute(
        "SELECT key_id, last4, updated_at FROM provider_secrets WHERE account_id = ?",
        (account_id,),
    ).fetchone()
    if not row:
        return {"configured": False, "last4": "", "key_id": None, "updated_at": None}
    key_id, last4, updated_at = row
    return {"configured": True, "last4": last4, "key_id": key_id, "updated_at": updated_at}


def load_provider_secret(conn: Any, account_id: str) -> str | None:
    row = conn.execute(
        "SELECT ciphertext FROM provider_secrets WHERE account_id = ?",
        (account_id,),
    ).fetchone()
    if not row:
        return None
    return decrypt_secret(row[0], _account_aad(account_id))


def gateway_for_account(conn: Any, config: Config, account_id: str) -> LlmGateway:
    """Gateway using the account's stored key, else the process-wide key."""
    return HttpLlmGateway.from_config(config.llm, api_key=load_provider_secret(conn, account_id))


def recent_logs(conn: Any, account_id: str, limit: int = 50, generated_article_id: str | None = None) -> list[dict[str, Any]]:
    rows = list_ai_response_logs(
        conn, account_id, limit=max(1, min(int(limit), 500)), generated_article_id=generated_article_id
    )
    return [
        {
            "id": row["id"],
            "generatedArticleId": row["generated_article_id"],
            "jobId": row["job_id"],
            "templateId": row["template_id"],
            "templateVersionId": row["template_version_id"],
            "promptCategory": row["prompt_category"],
            "promptText": row["prompt_text"],
            "responseText": row["response_text"],
            "maxOutputTokens": row["max_output_tokens"],
            "tokensUsedInput": row["tokens_used_input"],
            "tokensUsedOutput": row["tokens_used_output"],
            "stopReason": row["stop_reason"],
            "isTruncated": row["is_truncated"],
            "parseError": row["parse_error"],
            "createdAt": row["created_at"],
        }
        for row in rows
    ]


def _account_aad(account_id: str) -> bytes:
    return f"account:{account_id}".encode("utf-8")
