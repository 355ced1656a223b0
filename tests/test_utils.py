import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from uuid import UUID

from pydantic import BaseModel

from edenflow.utils import extract_published_at, json_dumps, json_loads, normalize_url, slugify


class Tier(Enum):
    GOOD = "good"


@dataclass
class Ref:
    content_id: str


class Model(BaseModel):
    name: str


def test_normalize_url_strips_tracking_and_sorts():
    url = "https://Example.com/path?utm_source=news&b=2&a=1"
    assert normalize_url(url) == "https://example.com/path?a=1&b=2"
    assert normalize_url("https://example.com") == "https://example.com/"


def test_normalize_url_keeps_tracking_when_disabled():
    url = "https://example.com/path?utm_source=news&b=2"
    normalized = normalize_url(url, strip_tracking_params=False)
    assert normalized == "https://example.com/path?b=2&utm_source=news"


def test_slugify():
    assert slugify("Hope Rises: Día 1!") == "hope-rises-dia-1"
    assert slugify("") == "untitled"
    assert slugify("???") == "untitled"
    assert slugify("a" * 100, max_length=10) == "a" * 10


def test_json_dumps_handles_supported_types():
    payload = {
        "ref": Ref(content_id="gc_1"),
        "tier": Tier.GOOD,
        "when": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "day": date(2026, 1, 2),
        "path": Path("/tmp/edenflow"),
        "uuid": UUID("12345678-1234-5678-1234-567812345678"),
        "model": Model(name="example"),
        "tuple": ("x", "y"),
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["ref"] == {"content_id": "gc_1"}
    assert decoded["tier"] == "good"
    assert decoded["when"].startswith("2026-01-01T00:00:00")
    assert decoded["day"] == "2026-01-02"
    assert decoded["path"] == "/tmp/edenflow"
    assert decoded["uuid"] == "12345678-1234-5678-1234-567812345678"
    assert decoded["model"] == {"name": "example"}
    assert decoded["tuple"] == ["x", "y"]


def test_json_loads_default():
    assert json_loads(None, {}) == {}
    assert json_loads("not json", []) == []
    assert json_loads('{"a": 1}') == {"a": 1}


def test_extract_published_at_prefers_published_then_updated():
    fetched = "2026-10-07T00:00:00+00:00"
    assert extract_published_at({"published": "Tue, 06 Oct 2026 08:30:00 GMT"}, fetched) == "2026-10-06T08:30:00+00:00"
    assert extract_published_at({"updated": "2026-10-05T10:00:00"}, fetched) == "2026-10-05T10:00:00+00:00"
    assert extract_published_at({"published": "someday"}, fetched) == fetched
