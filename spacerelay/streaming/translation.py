# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .openai_api import RateLimitedError

logger = logging.getLogger(__name__)


class KeyRing:
    """
    Round-robin credential ring shared by every upstream call.
    """

    def __init__(self, keys: Sequence[str]) -> None:
        cleaned = [str(k).strip() for k in keys if str(k or "").strip()]
        if not cleaned:
            raise ValueError("at least one api key is required")
        self._keys: List[str] = cleaned
        self._index = 0

    @classmethod
    def from_csv(cls, raw: str) -> "KeyRing":
        return cls(str(raw or "").split(","))

    def __len__(self) -> int:
        return len(self._keys)

    def current(self) -> str:
        return self._keys[self._index]

    def rotate(self, failed_key: Optional[str] = None) -> str:
        # Concurrent failures on the same key advance the ring only once.
        if failed_key is None or failed_key == self.current():
            self._index = (self._index + 1) % len(self._keys)
        return self.current()


def build_messages(text: str, source_language: str, target_language: str) -> List[Dict[str, str]]:
    return [
        {
            "role": "system",
            "content": (
                "You are a professional interpreter. "
                f"Translate the following text from {source_language} to {target_language}. "
                "Output ONLY the translated text."
            ),
        },
        {"role": "user", "content": text},
    ]


class TranslationFan:
    """
    Translate one transcript into every needed language concurrently.

    Listeners of the pass-through language read the original text, so that
    language is never requested. A language whose request keeps failing
    falls back to the original text instead of blocking the others.
    """

    def __init__(
        self,
        client: Any,
        keys: KeyRing,
        model: str = "llama-3.3-70b-versatile",
        passthrough_language: str = "English",
        source_language: str = "English",
        temperature: float = 0.3,
        max_tokens: int = 1024,
        rate_limit_backoff_sec: float = 1.0,
    ) -> None:
        self.client = client
        self.keys = keys
        self.model = str(model)
        self.passthrough_language = str(passthrough_language or "English")
        self.source_language = str(source_language or self.passthrough_language)
        self.temperature = float(temperature)
        self.max_tokens = max(1, int(max_tokens))
        self.rate_limit_backoff_sec = max(0.0, float(rate_limit_backoff_sec))

    def targets_for(self, target_languages: Iterable[str]) -> List[str]:
        out = set()
        for lang in target_languages:
            name = str(lang or "").strip()
            if name and name != self.passthrough_language:
                out.add(name)
        return sorted(out)

    async def translate_one(self, text: str, target_language: str, *, source_language: Optional[str] = None) -> str:
        source = str(source_language or self.source_language)
        messages = build_messages(text, source, target_language)
        attempts = len(self.keys)
        for attempt in range(attempts):
            key = self.keys.current()
            t0 = time.monotonic()
            try:
                out = await asyncio.to_thread(
                    self.client.chat,
                    messages,
                    model=self.model,
                    api_key=key,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
            except RateLimitedError:
                self.keys.rotate(key)
                logger.warning(
                    "translation rate limited target=%s attempt=%d/%d rotating key",
                    target_language,
                    attempt + 1,
                    attempts,
                )
                if attempt + 1 < attempts and self.rate_limit_backoff_sec > 0:
                    await asyncio.sleep(self.rate_limit_backoff_sec)
                continue
            except Exception as e:
                logger.warning("translation failed target=%s err=%s", target_language, e)
                return text
            out = str(out or "").strip()
            logger.info(
                "translation done target=%s src_chars=%d out_chars=%d latency_ms=%d",
                target_language,
                len(text),
                len(out),
                int((time.monotonic() - t0) * 1000),
            )
            return out or text

        logger.warning("translation keys exhausted target=%s falling back to original", target_language)
        return text

    async def translate_all(
        self,
        text: str,
        target_languages: Iterable[str],
        *,
        source_language: Optional[str] = None,
    ) -> Dict[str, str]:
        targets = self.targets_for(target_languages)
        if not targets:
            return {}
        results = await asyncio.gather(
            *(self.translate_one(text, lang, source_language=source_language) for lang in targets)
        )
        return dict(zip(targets, results))
