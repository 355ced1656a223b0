from __future__ import annotations

import json
import re
from typing import Any, Callable

import jsonschema

from ..errors import ParseFailure

KNOWN_PLATFORMS = ("facebook", "instagram", "linkedin", "twitter")
SHORT_FORM_MAX_SECONDS = 60

PRAYER_THEMES = {
    "healing": ("heal", "health", "recovery", "restore"),
    "guidance": ("guide", "direction", "wisdom", "lead"),
    "peace": ("peace", "calm", "comfort", "rest"),
    "provision": ("provide", "supply", "need", "provision"),
    "protection": ("protect", "safe", "security", "guard"),
    "justice": ("justice", "fair", "right", "truth"),
    "hope": ("hope", "future", "tomorrow", "better"),
}

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n(.*?)\n?\s*```\s*$", re.DOTALL)
_HEADING_RE = re.compile(r"^\s*(?:#{1,6}\s*(?P<hash>.+?)\s*#*|\*\*(?P<bold>.+?)\*\*:?)\s*$")
_LIST_MARKER_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+")
_HASHTAG_RE = re.compile(r"#\w+")

ITEM_SCHEMAS: dict[str, dict[str, Any]] = {
    "generic": {
        "type": "object",
        "required": ["text"],
        "properties": {"text": {"type": "string", "minLength": 1}},
    },
    "structured": {
        "type": "object",
        "minProperties": 1,
        "additionalProperties": {"type": "string"},
    },
    "json": {"type": "object"},
    "social_media": {
        "type": "object",
        "required": ["platform", "text", "hashtags"],
        "properties": {
            "platform": {"type": "string", "minLength": 1},
            "text": {"type": "string", "minLength": 1},
            "hashtags": {"type": "array", "items": {"type": "string"}},
        },
    },
    "video_script": {
        "type": "object",
        "required": ["title", "script", "duration_seconds", "type", "visual_suggestions"],
        "properties": {
            "title": {"type": "string"},
            "script": {"type": "string", "minLength": 1},
            "duration_seconds": {"type": "integer", "minimum": 1},
            "type": {"enum": ["short-form", "long-form"]},
            "visual_suggestions": {"type": "array", "items": {"type": "string"}},
        },
    },
    "prayer_points": {
        "type": "object",
        "required": ["order", "text"],
        "properties": {
            "order": {"type": "integer", "minimum": 1},
            "text": {"type": "string", "minLength": 1},
            "theme": {"type": ["string", "null"]},
        },
    },
}


def parse_output(
    method: str,
    text: str | None,
    stop_reason: str = "stop",
    parameters: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """Turn raw model output into the list of artifacts declared by ``method``.

    Output that does not conform raises ``ParseFailure``; nothing falls back
    to a looser method.
    """
    if method not in _PARSERS:
        raise ParseFailure(f"unknown_parsing_method {method}")
    truncated = stop_reason == "length"
    if method == "json" and truncated:
        raise ParseFailure("response_truncated", is_truncated=True)
    raw = (text or "").strip()
    if not raw:
        raise ParseFailure("empty_response", is_truncated=truncated)
    try:
        items = _PARSERS[method](raw, parameters or {})
    except ParseFailure as exc:
        raise ParseFailure(exc.message, is_truncated=truncated or exc.is_truncated) from exc
    if not items:
        raise ParseFailure("no_items", is_truncated=truncated)
    validate_items(method, items)
    return items


def validate_items(method: str, items: list[dict[str, Any]]) -> None:
    schema = ITEM_SCHEMAS[method]
    for index, item in enumerate(items):
        try:
            jsonschema.validate(item, schema)
        except jsonschema.ValidationError as exc:
            raise ParseFailure(f"item {index} invalid: {exc.message}") from exc


def strip_code_fences(text: str) -> str:
    match = _FENCE_RE.match(text)
    return match.group(1).strip() if match else text.strip()


def load_json(text: str) -> Any:
    try:
        return json.loads(strip_code_fences(text))
    except json.JSONDecodeError as exc:
        raise ParseFailure(f"invalid_json: {exc.msg}") from exc


def prayer_theme(text: str) -> str:
    lowered = text.lower()
    for theme, keywords in PRAYER_THEMES.items():
        if any(keyword in lowered for keyword in keywords):
            return theme
    return "general"


def _parse_generic(text: str, parameters: dict[str, Any]) -> list[dict[str, Any]]:
    return [{"text": text}]


def _parse_structured(text: str, parameters: dict[str, Any]) -> list[dict[str, Any]]:
    declared = [str(item) for item in parameters.get("sections") or []]
    lookup = {_section_key(name): name for name in declared}
    sections: dict[str, list[str]] = {}
    current: str | None = None
    for line in text.splitlines():
        heading = _heading_text(line, allow_colon=bool(declared))
        if heading is not None:
            key = _section_key(heading)
            if not declared or key in lookup:
                current = key
                sections.setdefault(current, [])
                continue
        if current is not None:
            sections[current].append(line)
    if not sections:
        raise ParseFailure("no_sections_found")
    if declared:
        missing = [name for name in declared if _section_key(name) not in sections]
        if missing:
            raise ParseFailure("missing_sections: " + ", ".join(missing))
    return [{key: "\n".join(lines).strip() for key, lines in sections.items()}]


def _parse_json(text: str, parameters: dict[str, Any]) -> list[dict[str, Any]]:
    data = load_json(text)
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [item if isinstance(item, dict) else {"value": item} for item in data]
    raise ParseFailure("json_must_be_object_or_array")


def _parse_social_media(text: str, parameters: dict[str, Any]) -> list[dict[str, Any]]:
    data = load_json(text)
    if isinstance(data, dict) and isinstance(data.get("posts"), list):
        data = data["posts"]
    entries: list[tuple[str, Any]] = []
    if isinstance(data, list):
        for item in data:
            if not isinstance(item, dict):
                raise ParseFailure("social_post_must_be_object")
            entries.append((str(item.get("platform") or ""), item))
    elif isinstance(data, dict):
        platforms = [key for key in KNOWN_PLATFORMS if key in data]
        platforms += [key for key in data if key not in KNOWN_PLATFORMS]
        for platform in platforms:
            entries.append((platform, data[platform]))
    else:
        raise ParseFailure("social_media_must_be_object_or_array")

    posts = []
    for platform, value in entries:
        if isinstance(value, str):
            body, hashtags = value, []
        elif isinstance(value, dict):
            body = value.get("text") or value.get("content") or value.get("post") or ""
            hashtags = value.get("hashtags") or []
        else:
            raise ParseFailure(f"invalid_social_post {platform}")
        if isinstance(hashtags, str):
            hashtags = _HASHTAG_RE.findall(hashtags) or hashtags.split()
        posts.append(
            {
                "platform": platform.strip().lower(),
                "text": str(body).strip(),
                "hashtags": [str(tag) for tag in hashtags],
            }
        )
    return posts


def _parse_video_script(text: str, parameters: dict[str, Any]) -> list[dict[str, Any]]:
    data = load_json(text)
    if isinstance(data, dict) and isinstance(data.get("scripts"), list):
        data = data["scripts"]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ParseFailure("video_script_must_be_object_or_array")
    default_duration = int(parameters.get("duration_seconds") or SHORT_FORM_MAX_SECONDS)
    scripts = []
    for item in data:
        if not isinstance(item, dict):
            raise ParseFailure("video_script_must_be_object")
        duration = _first(item, "duration_seconds", "durationSeconds", "duration")
        try:
            duration = int(duration) if duration is not None else default_duration
        except (TypeError, ValueError) as exc:
            raise ParseFailure("invalid_duration") from exc
        suggestions = _first(item, "visual_suggestions", "visualSuggestions") or []
        if isinstance(suggestions, str):
            suggestions = [suggestions]
        scripts.append(
            {
                "title": str(item.get("title") or "Video Script"),
                "script": str(_first(item, "script", "content") or "").strip(),
                "duration_seconds": duration,
                "type": "short-form" if duration <= SHORT_FORM_MAX_SECONDS else "long-form",
                "visual_suggestions": [str(entry) for entry in suggestions],
            }
        )
    return scripts


def _parse_prayer_points(text: str, parameters: dict[str, Any]) -> list[dict[str, Any]]:
    stripped = strip_code_fences(text)
    if stripped[:1] in ("[", "{"):
        data = load_json(stripped)
        if isinstance(data, dict):
            data = data.get("prayer_points") or data.get("points") or [data]
        if not isinstance(data, list):
            raise ParseFailure("prayer_points_must_be_array")
        texts: list[tuple[str, str | None]] = []
        for item in data:
            if isinstance(item, str):
                texts.append((item.strip(), None))
            elif isinstance(item, dict):
                body = _first(item, "text", "prayer_text", "prayer") or ""
                texts.append((str(body).strip(), item.get("theme")))
            else:
                raise ParseFailure("invalid_prayer_point")
    else:
        chunks = [chunk for chunk in re.split(r"\n\s*\n", stripped) if chunk.strip()]
        if len(chunks) == 1:
            chunks = [line for line in stripped.splitlines() if line.strip()]
        texts = [(_LIST_MARKER_RE.sub("", chunk).strip(), None) for chunk in chunks]
    return [
        {"order": index, "text": body, "theme": theme or prayer_theme(body)}
        for index, (body, theme) in enumerate((entry for entry in texts if entry[0]), start=1)
    ]


def _first(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _heading_text(line: str, allow_colon: bool = False) -> str | None:
    match = _HEADING_RE.match(line)
    if match:
        return (match.group("hash") or match.group("bold") or "").rstrip(":").strip()
    stripped = line.strip()
    if allow_colon and stripped.endswith(":") and 1 < len(stripped) <= 60:
        return stripped.rstrip(":")
    return None


def _section_key(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")


_PARSERS: dict[str, Callable[[str, dict[str, Any]], list[dict[str, Any]]]] = {
    "generic": _parse_generic,
    "structured": _parse_structured,
    "json": _parse_json,
    "social_media": _parse_social_media,
    "video_script": _parse_video_script,
    "prayer_points": _parse_prayer_points,
}
