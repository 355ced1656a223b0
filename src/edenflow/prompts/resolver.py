from __future__ import annotations

import json
import re
from typing import Any, Iterable

from ..errors import TemplateVariableUnresolved
from ..models import Account, PromptTemplateVersion, ScrapedArticle

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")
VARIABLE_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9._]*$")

_MISSING = object()


def extract_variables(*texts: str | None) -> list[str]:
    seen: list[str] = []
    for text in texts:
        for match in PLACEHOLDER_RE.finditer(text or ""):
            name = match.group(1)
            if name not in seen:
                seen.append(name)
    return seen


def invalid_variable_names(*texts: str | None) -> list[str]:
    return [
        name
        for name in extract_variables(*texts)
        if not VARIABLE_NAME_RE.match(name) or ".." in name or name.endswith(".")
    ]


def build_context(
    article: ScrapedArticle | None = None,
    account: Account | None = None,
    blog_id: str | None = None,
    prior: dict[str, Any] | None = None,
    source_name: str | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    context: dict[str, Any] = {
        "blog": {"id": blog_id or ""},
        "prior": dict(prior or {}),
    }
    if article is not None:
        context["article"] = {
            "id": article.id,
            "title": article.title or "",
            "content": article.full_text or article.summary or "",
            "summary": article.summary or "",
            "source": source_name or "",
            "url": article.url or "",
            "keywords": list(article.keywords),
            "publication_date": article.publication_date or "",
            "relevance_score": article.relevance_score,
        }
    if account is not None:
        context["account"] = {
            "id": account.id,
            "name": account.name,
            "slug": account.slug,
            "settings": dict(account.settings),
        }
    for key, value in (extra or {}).items():
        _assign_path(context, key, value)
    return context


def lookup(context: dict[str, Any], path: str) -> Any:
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    if current is None:
        return _MISSING
    return current


def render(text: str | None, context: dict[str, Any], optional: Iterable[str] = ()) -> str:
    """Substitute every ``{{path}}`` in ``text``.

    Raises ``TemplateVariableUnresolved`` listing each required path that has
    no value; paths named in ``optional`` render as an empty string instead.
    """
    if not text:
        return ""
    optional_set = set(optional)
    missing: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        path = match.group(1)
        value = lookup(context, path)
        if value is _MISSING:
            if path not in optional_set and path not in missing:
                missing.append(path)
            return ""
        return format_value(value)

    rendered = PLACEHOLDER_RE.sub(_replace, text)
    if missing:
        raise TemplateVariableUnresolved(missing=missing)
    return rendered


def render_prompt(
    version: PromptTemplateVersion, context: dict[str, Any]
) -> tuple[str, str | None]:
    optional = optional_variables(version)
    prompt = render(version.prompt_content, context, optional)
    system_message = render(version.system_message, context, optional) if version.system_message else None
    return prompt, system_message


def optional_variables(version: PromptTemplateVersion) -> list[str]:
    value = (version.parameters or {}).get("optional_variables") or []
    return [str(item) for item in value]


def format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _assign_path(context: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = context
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value
