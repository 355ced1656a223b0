from __future__ import annotations

import logging
import threading
from typing import Any

import yaml

from ..db import placeholders
from ..errors import NotFound, ValidationError
from ..models import (
    MEDIA_TYPES,
    PARSE_ERROR_POLICIES,
    PARSING_METHODS,
    ChainStep,
    PromptTemplate,
    PromptTemplateVersion,
)
from ..utils import json_dumps, json_loads, log_event, new_id, utc_now_iso
from .resolver import invalid_variable_names

_TEMPLATE_COLUMNS = """
    id, account_id, name, description, category, media_type, parsing_method,
    on_parse_error, current_version_id, execution_order, is_active, created_at, updated_at
"""
_VERSION_COLUMNS = """
    id, template_id, account_id, version_number, prompt_content, system_message,
    parameters_json, notes, created_by, created_at
"""

_UPDATABLE_FIELDS = ("name", "description", "category", "media_type", "parsing_method", "on_parse_error")


class TemplateCache:
    """Per-account cache of the active template chain.

    Entries hold pinned versions together with the stamp of the template rows
    they were read from. ``load_chain`` passes the current stamp, so a write
    made by another process drops the entry on the next read; ``invalidate``
    covers writes made in this one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._chains: dict[str, tuple[Any, list[ChainStep]]] = {}

    def get(self, account_id: str, stamp: Any = None) -> list[ChainStep] | None:
        with self._lock:
            entry = self._chains.get(account_id)
            if entry is None or (stamp is not None and entry[0] != stamp):
                return None
            return list(entry[1])

    def put(self, account_id: str, chain: list[ChainStep], stamp: Any = None) -> None:
        with self._lock:
            self._chains[account_id] = (stamp, list(chain))

    def invalidate(self, account_id: str | None = None) -> None:
        with self._lock:
            if account_id is None:
                self._chains.clear()
            else:
                self._chains.pop(account_id, None)


def create_template(
    conn: Any,
    account_id: str,
    name: str,
    category: str,
    prompt_content: str,
    *,
    description: str | None = None,
    media_type: str = "text",
    parsing_method: str = "generic",
    on_parse_error: str = "abort",
    system_message: str | None = None,
    parameters: dict[str, Any] | None = None,
    created_by: str | None = None,
    cache: TemplateCache | None = None,
) -> PromptTemplate:
    if not name or not name.strip():
        raise ValidationError("name is required")
    if not category or not category.strip():
        raise ValidationError("category is required")
    _check_choices(media_type, parsing_method, on_parse_error)
    _check_body(prompt_content, system_message)
    template_id = new_id("tpl")
    version_id = new_id("tplv")
    now = utc_now_iso()
    with conn.transaction():
        row = conn.execute(
            """
            SELECT COALESCE(MAX(execution_order), 0) FROM prompt_templates
            WHERE account_id = ? AND is_active = 1
            """,
            (account_id,),
        ).fetchone()
        execution_order = int(row[0] or 0) + 1
        conn.execute(
            """
            INSERT INTO prompt_templates
                (id, account_id, name, description, category, media_type, parsing_method,
                 on_parse_error, current_version_id, execution_order, is_active, created_by,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, 1, ?, ?, ?)
            """,
            (
                template_id,
                account_id,
                name.strip(),
                description,
                category.strip(),
                media_type,
                parsing_method,
                on_parse_error,
                execution_order,
                created_by,
                now,
                now,
            ),
        )
        _insert_version(
            conn,
            account_id,
            template_id,
            version_id,
            1,
            prompt_content,
            system_message,
            parameters,
            "Initial version",
            created_by,
        )
        conn.execute(
            "UPDATE prompt_templates SET current_version_id = ? WHERE account_id = ? AND id = ?",
            (version_id, account_id, template_id),
        )
    if cache is not None:
        cache.invalidate(account_id)
    return get_template(conn, account_id, template_id)


def update_template(
    conn: Any,
    account_id: str,
    template_id: str,
    changes: dict[str, Any],
    cache: TemplateCache | None = None,
) -> PromptTemplate:
    current = require_template(conn, account_id, template_id)
    unknown = [key for key in changes if key not in _UPDATABLE_FIELDS]
    if unknown:
        raise ValidationError("unknown fields: " + ", ".join(sorted(unknown)))
    merged = {field: getattr(current, field) for field in _UPDATABLE_FIELDS}
    merged.update({key: value for key, value in changes.items() if value is not None})
    if not str(merged["name"] or "").strip() or not str(merged["category"] or "").strip():
        raise ValidationError("name and category are required")
    _check_choices(merged["media_type"], merged["parsing_method"], merged["on_parse_error"])
    conn.execute(
        """
        UPDATE prompt_templates
        SET name = ?, description = ?, category = ?, media_type = ?, parsing_method = ?,
            on_parse_error = ?, updated_at = ?
        WHERE account_id = ? AND id = ?
        """,
        (
            str(merged["name"]).strip(),
            merged["description"],
            str(merged["category"]).strip(),
            merged["media_type"],
            merged["parsing_method"],
            merged["on_parse_error"],
            utc_now_iso(),
            account_id,
            template_id,
        ),
    )
    conn.commit()
    if cache is not None:
        cache.invalidate(account_id)
    return get_template(conn, account_id, template_id)


def get_template(conn: Any, account_id: str, template_id: str) -> PromptTemplate | None:
    row = conn.execute(
        f"SELECT {_TEMPLATE_COLUMNS} FROM prompt_templates WHERE account_id = ? AND id = ?",
        (account_id, template_id),
    ).fetchone()
    return _row_to_template(row) if row else None


def require_template(conn: Any, account_id: str, template_id: str) -> PromptTemplate:
    template = get_template(conn, account_id, template_id)
    if template is None:
        raise NotFound("template_not_found")
    return template


def list_templates(
    conn: Any, account_id: str, include_inactive: bool = False
) -> list[PromptTemplate]:
    active_clause = "" if include_inactive else " AND is_active = 1"
    cursor = conn.execute(
        f"""
        SELECT {_TEMPLATE_COLUMNS} FROM prompt_templates
        WHERE account_id = ?{active_clause}
        ORDER BY is_active DESC, execution_order ASC, created_at ASC, id ASC
        """,
        (account_id,),
    )
    return [_row_to_template(row) for row in cursor.fetchall()]


def deactivate_template(
    conn: Any, account_id: str, template_id: str, cache: TemplateCache | None = None
) -> PromptTemplate:
    """Take a template out of the chain and close the gap in execution order."""
    require_template(conn, account_id, template_id)
    with conn.transaction():
        conn.execute(
            """
            UPDATE prompt_templates SET is_active = 0, updated_at = ?
            WHERE account_id = ? AND id = ?
            """,
            (utc_now_iso(), account_id, template_id),
        )
        remaining = [item.id for item in list_templates(conn, account_id)]
        _write_order(conn, account_id, remaining)
    if cache is not None:
        cache.invalidate(account_id)
    return get_template(conn, account_id, template_id)


def activate_template(
    conn: Any, account_id: str, template_id: str, cache: TemplateCache | None = None
) -> PromptTemplate:
    template = require_template(conn, account_id, template_id)
    if template.is_active:
        return template
    with conn.transaction():
        row = conn.execute(
            """
            SELECT COALESCE(MAX(execution_order), 0) FROM prompt_templates
            WHERE account_id = ? AND is_active = 1
            """,
            (account_id,),
        ).fetchone()
        conn.execute(
            """
            UPDATE prompt_templates SET is_active = 1, execution_order = ?, updated_at = ?
            WHERE account_id = ? AND id = ?
            """,
            (int(row[0] or 0) + 1, utc_now_iso(), account_id, template_id),
        )
    if cache is not None:
        cache.invalidate(account_id)
    return get_template(conn, account_id, template_id)


def create_version(
    conn: Any,
    account_id: str,
    template_id: str,
    prompt_content: str,
    *,
    system_message: str | None = None,
    parameters: dict[str, Any] | None = None,
    notes: str | None = None,
    created_by: str | None = None,
    set_current: bool = False,
    cache: TemplateCache | None = None,
) -> PromptTemplateVersion:
    require_template(conn, account_id, template_id)
    _check_body(prompt_content, system_message)
    version_id = new_id("tplv")
    with conn.transaction():
        row = conn.execute(
            """
            SELECT COALESCE(MAX(version_number), 0) FROM prompt_template_versions
            WHERE account_id = ? AND template_id = ?
            """,
            (account_id, template_id),
        ).fetchone()
        version_number = int(row[0] or 0) + 1
        _insert_version(
            conn,
            account_id,
            template_id,
            version_id,
            version_number,
            prompt_content,
            system_message,
            parameters,
            notes,
            created_by,
        )
        if set_current:
            _point_current(conn, account_id, template_id, version_id)
    if cache is not None:
        cache.invalidate(account_id)
    return get_version(conn, account_id, version_id)


def get_version(conn: Any, account_id: str, version_id: str) -> PromptTemplateVersion | None:
    row = conn.execute(
        f"SELECT {_VERSION_COLUMNS} FROM prompt_template_versions WHERE account_id = ? AND id = ?",
        (account_id, version_id),
    ).fetchone()
    return _row_to_version(row) if row else None


def list_versions(conn: Any, account_id: str, template_id: str) -> list[PromptTemplateVersion]:
    require_template(conn, account_id, template_id)
    cursor = conn.execute(
        f"""
        SELECT {_VERSION_COLUMNS} FROM prompt_template_versions
        WHERE account_id = ? AND template_id = ?
        ORDER BY version_number DESC
        """,
        (account_id, template_id),
    )
    return [_row_to_version(row) for row in cursor.fetchall()]


def set_current_version(
    conn: Any,
    account_id: str,
    template_id: str,
    version_id: str,
    cache: TemplateCache | None = None,
) -> PromptTemplate:
    with conn.transaction():
        require_template(conn, account_id, template_id)
        version = get_version(conn, account_id, version_id)
        if version is None or version.template_id != template_id:
            raise NotFound("version_not_found")
        _point_current(conn, account_id, template_id, version_id)
    if cache is not None:
        cache.invalidate(account_id)
    return get_template(conn, account_id, template_id)


def reorder_templates(
    conn: Any,
    account_id: str,
    order: list[str],
    cache: TemplateCache | None = None,
) -> list[PromptTemplate]:
    """Apply a new execution order given as the full list of active template ids."""
    if not isinstance(order, list) or not all(isinstance(item, str) for item in order):
        raise ValidationError("order must be a list of template ids")
    with conn.transaction():
        active = [item.id for item in list_templates(conn, account_id)]
        if len(order) != len(active) or set(order) != set(active):
            raise ValidationError("order must be a permutation of the account's active templates")
        _write_order(conn, account_id, order)
    if cache is not None:
        cache.invalidate(account_id)
    return list_templates(conn, account_id)


def load_chain(
    conn: Any,
    account_id: str,
    template_ids: list[str] | None = None,
    cache: TemplateCache | None = None,
) -> list[ChainStep]:
    """Return the account's active templates in execution order, versions pinned.

    ``template_ids`` narrows the chain; every id must be an active template of
    this account.
    """
    chain = None
    stamp = None
    if cache is not None:
        stamp = chain_stamp(conn, account_id)
        chain = cache.get(account_id, stamp)
    if chain is None:
        chain = _load_full_chain(conn, account_id)
        if cache is not None:
            cache.put(account_id, chain, stamp)
    if template_ids is None:
        return chain
    by_id = {step.template.id: step for step in chain}
    unknown = [item for item in template_ids if item not in by_id]
    if unknown:
        raise ValidationError("unknown templates: " + ", ".join(unknown))
    wanted = set(template_ids)
    return [step for step in chain if step.template.id in wanted]


def chain_stamp(conn: Any, account_id: str) -> tuple[int, str | None]:
    """Changes whenever a template row of the account is written."""
    row = conn.execute(
        "SELECT COUNT(*), MAX(updated_at) FROM prompt_templates WHERE account_id = ?",
        (account_id,),
    ).fetchone()
    return (int(row[0] or 0), row[1]) if row else (0, None)


def check_template_ids(conn: Any, account_id: str, template_ids: list[str]) -> None:
    if not template_ids:
        return
    if not all(isinstance(item, str) for item in template_ids):
        raise ValidationError("templateIds must be strings")
    rows = conn.execute(
        f"""
        SELECT id FROM prompt_templates
        WHERE account_id = ? AND is_active = 1 AND id IN ({placeholders(len(template_ids))})
        """,
        (account_id, *template_ids),
    ).fetchall()
    found = {row[0] for row in rows}
    unknown = [item for item in template_ids if item not in found]
    if unknown:
        raise ValidationError("unknown templates: " + ", ".join(unknown))


def usage_stats(conn: Any, account_id: str, template_id: str) -> list[dict[str, Any]]:
    require_template(conn, account_id, template_id)
    cursor = conn.execute(
        """
        SELECT v.id, v.version_number, v.created_at,
               COUNT(l.id),
               SUM(CASE WHEN l.id IS NOT NULL AND l.parse_error IS NULL THEN 1 ELSE 0 END),
               SUM(CASE WHEN l.is_truncated = 1 THEN 1 ELSE 0 END),
               AVG(l.tokens_used_output)
        FROM prompt_template_versions v
        LEFT JOIN ai_response_logs l
            ON l.template_version_id = v.id AND l.account_id = v.account_id
        WHERE v.account_id = ? AND v.template_id = ?
        GROUP BY v.id, v.version_number, v.created_at
        ORDER BY v.version_number DESC
        """,
        (account_id, template_id),
    )
    stats = []
    for version_id, number, created_at, uses, ok, truncated, avg_tokens in cursor.fetchall():
        stats.append(
            {
                "version_id": version_id,
                "version_number": int(number),
                "version_created": created_at,
                "total_uses": int(uses or 0),
                "successful_uses": int(ok or 0),
                "truncated_uses": int(truncated or 0),
                "avg_tokens_used": float(avg_tokens) if avg_tokens is not None else None,
            }
        )
    return stats


def generation_history(
    conn: Any, account_id: str, template_id: str, limit: int = 50
) -> list[dict[str, Any]]:
    require_template(conn, account_id, template_id)
    cursor = conn.execute(
        """
        SELECT l.id, l.generated_article_id, l.job_id, l.template_version_id, v.version_number,
               l.stop_reason, l.is_truncated, l.parse_error, l.tokens_used_output, l.created_at
        FROM ai_response_logs l
        LEFT JOIN prompt_template_versions v ON v.id = l.template_version_id
        WHERE l.account_id = ? AND l.template_id = ?
        ORDER BY l.created_at DESC, l.id
        LIMIT ?
        """,
        (account_id, template_id, int(limit)),
    )
    keys = [
        "id",
        "generated_article_id",
        "job_id",
        "template_version_id",
        "version_number",
        "stop_reason",
        "is_truncated",
        "parse_error",
        "tokens_used_output",
        "created_at",
    ]
    history = []
    for row in cursor.fetchall():
        item = dict(zip(keys, row))
        item["is_truncated"] = bool(item["is_truncated"])
        history.append(item)
    return history


def import_templates(
    conn: Any,
    account_id: str,
    document: str,
    created_by: str | None = None,
    cache: TemplateCache | None = None,
) -> list[PromptTemplate]:
    """Create templates from a YAML document.

    Accepts either ``templates: [...]`` entries or a single template written
    as ``metadata`` / ``prompts`` / ``template_variables`` sections.
    """
    logger = logging.getLogger("edenflow.prompts")
    try:
        data = yaml.safe_load(document)
    except yaml.YAMLError as exc:
        raise ValidationError(f"invalid_yaml: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("template document must be a mapping")
    entries = data.get("templates")
    if entries is None:
        entries = [data]
    if not isinstance(entries, list):
        raise ValidationError("templates must be a list")
    fields = [_template_fields(entry) for entry in entries]
    created = []
    with conn.transaction():
        for item in fields:
            created.append(
                create_template(conn, account_id, created_by=created_by, **item)
            )
    if cache is not None:
        cache.invalidate(account_id)
    log_event(
        logger,
        logging.INFO,
        "templates_imported",
        account_id=account_id,
        count=len(created),
    )
    return created


def template_to_dict(template: PromptTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "category": template.category,
        "mediaType": template.media_type,
        "parsingMethod": template.parsing_method,
        "onParseError": template.on_parse_error,
        "currentVersionId": template.current_version_id,
        "executionOrder": template.execution_order,
        "isActive": template.is_active,
        "createdAt": template.created_at,
        "updatedAt": template.updated_at,
    }


def version_to_dict(version: PromptTemplateVersion) -> dict[str, Any]:
    return {
        "id": version.id,
        "templateId": version.template_id,
        "versionNumber": version.version_number,
        "promptContent": version.prompt_content,
        "systemMessage": version.system_message,
        "parameters": version.parameters,
        "notes": version.notes,
        "createdBy": version.created_by,
        "createdAt": version.created_at,
    }


def _template_fields(entry: Any) -> dict[str, Any]:
    if not isinstance(entry, dict):
        raise ValidationError("template entry must be a mapping")
    if "metadata" in entry or "prompts" in entry:
        metadata = entry.get("metadata") or {}
        prompts = entry.get("prompts") or {}
        optional = [
            str(item.get("name"))
            for item in entry.get("template_variables") or []
            if isinstance(item, dict) and item.get("name") and item.get("required") is False
        ]
        parameters = {"optional_variables": optional} if optional else {}
        return {
            "name": str(metadata.get("name") or metadata.get("id") or ""),
            "category": str(metadata.get("category") or ""),
            "description": metadata.get("description"),
            "prompt_content": str(prompts.get("user") or ""),
            "system_message": prompts.get("system"),
            "media_type": str(metadata.get("media_type") or "text"),
            "parsing_method": str(metadata.get("parsing_method") or "generic"),
            "on_parse_error": str(metadata.get("on_parse_error") or "abort"),
            "parameters": parameters,
        }
    parameters = entry.get("parameters") or {}
    if not isinstance(parameters, dict):
        raise ValidationError("parameters must be a mapping")
    return {
        "name": str(entry.get("name") or ""),
        "category": str(entry.get("category") or ""),
        "description": entry.get("description"),
        "prompt_content": str(entry.get("prompt") or entry.get("prompt_content") or ""),
        "system_message": entry.get("system_message"),
        "media_type": str(entry.get("media_type") or "text"),
        "parsing_method": str(entry.get("parsing_method") or "generic"),
        "on_parse_error": str(entry.get("on_parse_error") or "abort"),
        "parameters": parameters,
    }


def _load_full_chain(conn: Any, account_id: str) -> list[ChainStep]:
    cursor = conn.execute(
        f"""
        SELECT {", ".join("t." + col.strip() for col in _TEMPLATE_COLUMNS.split(","))},
               {", ".join("v." + col.strip() for col in _VERSION_COLUMNS.split(","))}
        FROM prompt_templates t
        JOIN prompt_template_versions v
            ON v.id = t.current_version_id AND v.account_id = t.account_id
        WHERE t.account_id = ? AND t.is_active = 1
        ORDER BY t.execution_order ASC, t.id ASC
        """,
        (account_id,),
    )
    width = len(_TEMPLATE_COLUMNS.split(","))
    return [
        ChainStep(template=_row_to_template(row[:width]), version=_row_to_version(row[width:]))
        for row in cursor.fetchall()
    ]


def _insert_version(
    conn: Any,
    account_id: str,
    template_id: str,
    version_id: str,
    version_number: int,
    prompt_content: str,
    system_message: str | None,
    parameters: dict[str, Any] | None,
    notes: str | None,
    created_by: str | None,
) -> None:
    if parameters is not None and not isinstance(parameters, dict):
        raise ValidationError("parameters must be an object")
    conn.execute(
        """
        INSERT INTO prompt_template_versions
            (id, template_id, account_id, version_number, prompt_content, system_message,
             parameters_json, notes, created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            version_id,
            template_id,
            account_id,
            version_number,
            prompt_content,
            system_message,
            json_dumps(parameters or {}),
            notes,
            created_by,
            utc_now_iso(),
        ),
    )


def _point_current(conn: Any, account_id: str, template_id: str, version_id: str) -> None:
    conn.execute(
        """
        UPDATE prompt_templates SET current_version_id = ?, updated_at = ?
        WHERE account_id = ? AND id = ?
        """,
        (version_id, utc_now_iso(), account_id, template_id),
    )


def _write_order(conn: Any, account_id: str, order: list[str]) -> None:
    now = utc_now_iso()
    for position, template_id in enumerate(order, start=1):
        conn.execute(
            """
            UPDATE prompt_templates SET execution_order = ?, updated_at = ?
            WHERE account_id = ? AND id = ?
            """,
            (position, now, account_id, template_id),
        )


def _check_choices(media_type: str, parsing_method: str, on_parse_error: str) -> None:
    if media_type not in MEDIA_TYPES:
        raise ValidationError(f"unknown media_type {media_type}")
    if parsing_method not in PARSING_METHODS:
        raise ValidationError(f"unknown parsing_method {parsing_method}")
    if on_parse_error not in PARSE_ERROR_POLICIES:
        raise ValidationError(f"unknown on_parse_error {on_parse_error}")


def _check_body(prompt_content: str, system_message: str | None) -> None:
    if not prompt_content or not prompt_content.strip():
        raise ValidationError("prompt_content is required")
    invalid = invalid_variable_names(prompt_content, system_message)
    if invalid:
        raise ValidationError("invalid variable names: " + ", ".join(invalid))


def _row_to_template(row: tuple) -> PromptTemplate:
    (
        template_id,
        account_id,
        name,
        description,
        category,
        media_type,
        parsing_method,
        on_parse_error,
        current_version_id,
        execution_order,
        is_active,
        created_at,
        updated_at,
    ) = row
    return PromptTemplate(
        id=template_id,
        account_id=account_id,
        name=name,
        description=description,
        category=category,
        media_type=media_type,
        parsing_method=parsing_method,
        on_parse_error=on_parse_error or "abort",
        current_version_id=current_version_id,
        execution_order=int(execution_order),
        is_active=bool(is_active),
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_version(row: tuple) -> PromptTemplateVersion:
    (
        version_id,
        template_id,
        account_id,
        version_number,
        prompt_content,
        system_message,
        parameters_json,
        notes,
        created_by,
        created_at,
    ) = row
    return PromptTemplateVersion(
        id=version_id,
        template_id=template_id,
        account_id=account_id,
        version_number=int(version_number),
        prompt_content=prompt_content,
        system_message=system_message,
        parameters=dict(json_loads(parameters_json, {}) or {}),
        notes=notes,
        created_by=created_by,
        created_at=created_at,
    )
