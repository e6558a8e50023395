# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

from .openai_api import RateLimitedError
from .translation import KeyRing

logger = logging.getLogger(__name__)


class Transcriber:
    """
    One speech-to-text call per segment. Failures and short results drop the
    segment; nothing is retried.
    """

    def __init__(
        self,
        client: Any,
        keys: KeyRing,
        model: str = "whisper-large-v3",
        language: Optional[str] = "en",
        min_chars: int = 5,
    ) -> None:
        self.client = client
        self.keys = keys
        self.model = str(model)
        self.language = str(language).strip() if language else None
        self.min_chars = max(0, int(min_chars))

    def accept(self, text: Optional[str]) -> Optional[str]:
        out = str(text or "").strip()
        if len(out) <= self.min_chars:
            return None
        return out

    async def transcribe(self, wav: bytes, *, language: Optional[str] = None) -> Optional[str]:
        key = self.keys.current()
        lang = str(language).strip() if language else self.language
        t0 = time.monotonic()
        try:
            text = await asyncio.to_thread(
                self.client.transcribe,
                wav,
                model=self.model,
                api_key=key,
                language=lang,
            )
        except RateLimitedError:
            self.keys.rotate(key)
            logger.warning("transcription rate limited, segment dropped and key rotated")
            return None
        except Exception as e:
            logger.warning("transcription failed, segment dropped err=%s", e)
            return None

        out = self.accept(text)
        logger.info(
            "transcription done wav_bytes=%d chars=%d kept=%s latency_ms=%d",
            len(wav),
            len(str(text or "").strip()),
            out is not None,
            int((time.monotonic() - t0) * 1000),
        )
        return out
