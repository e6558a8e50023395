# coding=utf-8
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

import httpx


class UpstreamAPIError(RuntimeError):
    pass


class RateLimitedError(UpstreamAPIError):
    pass


class OpenAIAPIClient:
    """
    Blocking client for an OpenAI-compatible HTTP API (chat completions and
    audio transcriptions). Callers run it in a worker thread.

    ``transport`` is handed to ``httpx.Client`` for the audio upload.
    """

    def __init__(
        self,
        base_url: str,
        timeout_sec: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = str(base_url or "").strip()
        if not self.base_url:
            raise ValueError("api base_url is empty")
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.transport = transport

        normalized = self.base_url.rstrip("/")
        for suffix in ("/chat/completions", "/audio/transcriptions"):
            if normalized.endswith(suffix):
                normalized = normalized[: -len(suffix)]
        if not normalized.endswith("/v1"):
            normalized = f"{normalized}/v1"
        self.api_root = normalized
        self.chat_url = f"{normalized}/chat/completions"
        self.transcriptions_url = f"{normalized}/audio/transcriptions"

    @staticmethod
    def _auth_headers(api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def _post_json(self, url: str, body: Dict[str, Any], api_key: str) -> Dict[str, Any]:
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json", **self._auth_headers(api_key)}
        req = urllib.request.Request(url, data=data, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            if e.code == 429:
                raise RateLimitedError(f"rate limited by {url}") from e
            raise UpstreamAPIError(f"http {e.code} from {url}") from e
        except (urllib.error.URLError, OSError) as e:
            raise UpstreamAPIError(f"request to {url} failed: {e}") from e
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise UpstreamAPIError(f"invalid json from {url}: {e}") from e
        if not isinstance(payload, dict):
            raise UpstreamAPIError(f"unexpected payload from {url}")
        return payload

    @staticmethod
    def _extract_content(payload: Dict[str, Any]) -> str:
        choices = payload.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
            content = message.get("content")
            if isinstance(content, str):
                return content.strip()
            if isinstance(content, list):
                chunks = []
                for item in content:
                    if isinstance(item, str):
                        chunks.append(item)
                    elif isinstance(item, dict):
                        txt = item.get("text")
                        if isinstance(txt, str):
                            chunks.append(txt)
                return "".join(chunks).strip()
        return ""

    def chat(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        api_key: str = "",
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> str:
        body = {
            "model": str(model),
            "messages": messages,
            "temperature": float(temperature),
            "max_tokens": max(1, int(max_tokens)),
            "stream": False,
        }
        payload = self._post_json(self.chat_url, body, api_key)
        return self._extract_content(payload)

    def transcribe(
        self,
        wav: bytes,
        *,
        model: str,
        api_key: str = "",
        language: Optional[str] = None,
        filename: str = "audio.wav",
    ) -> str:
        url = self.transcriptions_url
        fields = {"model": str(model), "response_format": "json"}
        if language:
            fields["language"] = str(language)
        try:
            with httpx.Client(transport=self.transport, timeout=self.timeout_sec) as client:
                resp = client.post(
                    url,
                    data=fields,
                    files={"file": (filename, bytes(wav), "audio/wav")},
                    headers=self._auth_headers(api_key),
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                raise RateLimitedError(f"rate limited by {url}") from e
            raise UpstreamAPIError(f"http {e.response.status_code} from {url}") from e
        except httpx.HTTPError as e:
            raise UpstreamAPIError(f"request to {url} failed: {e}") from e
        except ValueError as e:
            raise UpstreamAPIError(f"invalid json from {url}: {e}") from e
        if not isinstance(payload, dict):
            raise UpstreamAPIError(f"unexpected payload from {url}")
        text = payload.get("text")
        return text.strip() if isinstance(text, str) else ""
