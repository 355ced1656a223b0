from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Protocol

from ..config import LlmConfig
from ..errors import TransientUpstream, ValidationError
from ..models import LlmResponse
from ..utils import log_event

PROVIDER_TYPES = ("openai_compatible", "anthropic", "google")

_STOP_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "STOP": "stop",
    "length": "length",
    "max_tokens": "length",
    "MAX_TOKENS": "length",
}

_RETRYABLE_STATUS = {408, 409, 425, 429}


class LlmGateway(Protocol):
    def generate(
        self,
        prompt: str,
        system_message: str | None = None,
        max_output_tokens: int | None = None,
    ) -> LlmResponse:
        ...


class HttpLlmGateway:
    """Calls a hosted model over HTTP.

    Timeouts surface as ``TransientUpstream`` with ``stop_reason="timeout"``;
    network errors and upstream 5xx/429 responses as ``TransientUpstream``.
    """

    def __init__(
        self,
        provider_type: str,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: int = 60,
        temperature: float = 0.7,
        default_max_tokens: int = 2000,
    ) -> None:
        if provider_type not in PROVIDER_TYPES:
            raise ValidationError("unsupported_provider_type")
        self.provider_type = provider_type
        self.model = model
        self.api_key = api_key or None
        self.base_url = base_url or _default_base_url(provider_type)
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.default_max_tokens = default_max_tokens
        self.logger = logging.getLogger("edenflow.llm")

    @classmethod
    def from_config(cls, config: LlmConfig, api_key: str | None = None) -> "HttpLlmGateway":
        return cls(
            provider_type=config.provider_type,
            model=config.model,
            api_key=api_key or config.api_key,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            temperature=config.temperature,
            default_max_tokens=config.default_max_tokens,
        )

    def generate(
        self,
        prompt: str,
        system_message: str | None = None,
        max_output_tokens: int | None = None,
    ) -> LlmResponse:
        max_tokens = int(max_output_tokens or self.default_max_tokens)
        if self.provider_type == "openai_compatible":
            messages = []
            if system_message:
                messages.append({"role": "system", "content": system_message})
            messages.append({"role": "user", "content": prompt})
            payload = {
                "model": self.model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": self.temperature,
            }
            url = _join_url(self.base_url, "/chat/completions")
            response = self._http_request("POST", url, self._auth_headers(), payload)
            result = _read_openai(response)
        elif self.provider_type == "anthropic":
            payload = {
                "model": self.model,
                "max_tokens": max_tokens,
                "temperature": self.temperature,
                "messages": [{"role": "user", "content": prompt}],
            }
            if system_message:
                payload["system"] = system_message
            url = _join_url(self.base_url, "/messages")
            response = self._http_request("POST", url, self._auth_headers(), payload)
            result = _read_anthropic(response)
        else:
            payload = {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {
                    "maxOutputTokens": max_tokens,
                    "temperature": self.temperature,
                },
            }
            if system_message:
                payload["systemInstruction"] = {"parts": [{"text": system_message}]}
            url = _join_url(
                self.base_url,
                f"/models/{urllib.parse.quote(self.model)}:generateContent",
            )
            url = _append_key(url, self.api_key)
            response = self._http_request("POST", url, {}, payload)
            result = _read_google(response)
        log_event(
            self.logger,
            logging.DEBUG,
            "llm_generate",
            provider=self.provider_type,
            model=self.model,
            stop_reason=result.stop_reason,
            tokens_out=result.tokens_used_output,
        )
        return result

    def _auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        if self.provider_type == "openai_compatible":
            return {"Authorization": f"Bearer {self.api_key}"}
        if self.provider_type == "anthropic":
            return {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"}
        return {}

    def _http_request(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any] | None,
    ) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(url, data=data, method=method)
        request.add_header("Content-Type", "application/json")
        for key, value in headers.items():
            request.add_header(key, value)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            log_event(
                self.logger,
                logging.WARNING,
                "llm_http_error",
                provider=self.provider_type,
                status=exc.code,
                body=body[:200],
            )
            if exc.code >= 500 or exc.code in _RETRYABLE_STATUS:
                raise TransientUpstream(f"llm_http_error {exc.code}") from exc
            raise TransientUpstream(f"llm_rejected {exc.code}", stop_reason="error") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise TransientUpstream("llm_timeout", stop_reason="timeout") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise TransientUpstream("llm_timeout", stop_reason="timeout") from exc
            raise TransientUpstream(f"llm_network_error: {exc.reason}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TransientUpstream("llm_invalid_response") from exc


def _read_openai(response: dict[str, Any]) -> LlmResponse:
    choices = response.get("choices") or []
    if not choices:
        raise TransientUpstream("openai_missing_choices")
    choice = choices[0]
    usage = response.get("usage") or {}
    return _response(
        (choice.get("message") or {}).get("content") or "",
        usage.get("prompt_tokens"),
        usage.get("completion_tokens"),
        choice.get("finish_reason"),
    )


def _read_anthropic(response: dict[str, Any]) -> LlmResponse:
    content = response.get("content") or []
    if not content:
        raise TransientUpstream("anthropic_missing_content")
    usage = response.get("usage") or {}
    text = "".join(part.get("text") or "" for part in content if part.get("type", "text") == "text")
    return _response(
        text,
        usage.get("input_tokens"),
        usage.get("output_tokens"),
        response.get("stop_reason"),
    )


def _read_google(response: dict[str, Any]) -> LlmResponse:
    candidates = response.get("candidates") or []
    if not candidates:
        raise TransientUpstream("google_missing_candidates")
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    usage = response.get("usageMetadata") or {}
    return _response(
        "".join(part.get("text") or "" for part in parts),
        usage.get("promptTokenCount"),
        usage.get("candidatesTokenCount"),
        candidate.get("finishReason"),
    )


def _response(
    text: str, tokens_in: Any, tokens_out: Any, finish_reason: str | None
) -> LlmResponse:
    stop_reason = _STOP_REASONS.get(finish_reason or "stop", "error")
    return LlmResponse(
        text=text,
        tokens_used_input=int(tokens_in or 0),
        tokens_used_output=int(tokens_out or 0),
        stop_reason=stop_reason,
        is_truncated=stop_reason == "length",
    )


def _default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "anthropic":
        return "https://api.anthropic.com/v1"
    if provider_type == "google":
        return "https://generativelanguage.googleapis.com/v1beta"
    return ""


def _append_key(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("key", api_key))
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), parsed.fragment)
    )


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
