from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Protocol

from .config import ImageConfig
from .errors import TransientUpstream
from .utils import log_event, slugify

DEFAULT_CDN_API_URL = "https://api.sirv.com/v2"
CDN_FOLDER = "edenflow-content"


class ImageProvider(Protocol):
    def find_image(self, query: str) -> dict[str, Any] | None:
        ...

    def publish(self, source_url: str, alt_text: str) -> dict[str, Any]:
        ...


class HttpImageProvider:
    """Stock photo search plus upload to an image CDN.

    ``find_image`` returns ``{"source_url", "meta"}`` or ``None`` when the
    search has no hits; ``publish`` returns ``{"cdn_url", "alt_text"}``.
    """

    def __init__(self, config: ImageConfig, cdn_api_url: str = DEFAULT_CDN_API_URL) -> None:
        self.config = config
        self.cdn_api_url = cdn_api_url.rstrip("/")
        self.logger = logging.getLogger("edenflow.images")
        self._token_lock = threading.Lock()
        self._token: str | None = None
        self._token_expiry = 0.0

    def find_image(self, query: str) -> dict[str, Any] | None:
        params = urllib.parse.urlencode({"query": query, "per_page": 5, "orientation": "landscape"})
        request = urllib.request.Request(
            f"{self.config.search_url}?{params}",
            headers={"Authorization": self.config.api_key},
        )
        payload = json.loads(self._open(request).decode("utf-8"))
        photos = payload.get("photos") or []
        if not photos:
            log_event(self.logger, logging.INFO, "image_search_empty", query=query)
            return None
        photo = photos[0]
        src = photo.get("src") or {}
        return {
            "source_url": src.get("large2x") or src.get("large") or src.get("original"),
            "meta": {
                "id": photo.get("id"),
                "width": photo.get("width"),
                "height": photo.get("height"),
                "photographer": photo.get("photographer"),
                "alt": photo.get("alt") or query,
                "page_url": photo.get("url"),
            },
        }

    def publish(self, source_url: str, alt_text: str) -> dict[str, Any]:
        if not (self.config.cdn_client_id and self.config.cdn_client_secret):
            return {"cdn_url": source_url, "alt_text": alt_text}
        image = self._open(urllib.request.Request(source_url))
        filename = f"{slugify(alt_text, max_length=50)}-{int(time.time())}.jpg"
        path = urllib.parse.quote(f"/{CDN_FOLDER}/{filename}")
        request = urllib.request.Request(
            f"{self.cdn_api_url}/files/upload?filename={path}",
            data=image,
            method="POST",
            headers={
                "Authorization": f"Bearer {self._cdn_token()}",
                "Content-Type": "application/octet-stream",
            },
        )
        self._open(request)
        cdn_url = f"{self.config.cdn_public_url.rstrip('/')}/{CDN_FOLDER}/{filename}"
        log_event(self.logger, logging.INFO, "image_published", cdn_url=cdn_url)
        return {"cdn_url": cdn_url, "alt_text": alt_text}

    def _cdn_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expiry:
                return self._token
            body = json.dumps(
                {
                    "clientId": self.config.cdn_client_id,
                    "clientSecret": self.config.cdn_client_secret,
                }
            ).encode("utf-8")
            request = urllib.request.Request(
                f"{self.cdn_api_url}/token",
                data=body,
                method="POST",
                headers={"Content-Type": "application/json"},
            )
            payload = json.loads(self._open(request).decode("utf-8"))
            self._token = str(payload["token"])
            # Refresh a minute before the CDN expires it.
            self._token_expiry = time.monotonic() + float(payload.get("expiresIn", 1200)) - 60
            return self._token

    def _open(self, request: urllib.request.Request) -> bytes:
        try:
            with urllib.request.urlopen(request, timeout=self.config.timeout_seconds) as response:
                return response.read()
        except urllib.error.HTTPError as exc:
            raise TransientUpstream(f"image_http_error {exc.code}") from exc
        except (urllib.error.URLError, TimeoutError) as exc:
            raise TransientUpstream("image_unreachable") from exc
