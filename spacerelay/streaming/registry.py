# coding=utf-8
from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Set

from .history import SessionHistory, TranscriptRecord

logger = logging.getLogger(__name__)


def live_item(text: str, timestamp: float) -> Dict[str, Any]:
    return {"transcript": text, "is_user": False, "timestamp": timestamp}


class ConnectionRegistry:
    """
    Listener -> language table plus language-aware fan-out.

    A listener is any object with an async ``send_json(payload)``. Failed
    sends are collected during a pass and pruned once the pass is over.
    """

    def __init__(self, history: SessionHistory, passthrough_language: str = "English") -> None:
        self.history = history
        self.passthrough_language = str(passthrough_language or "English")
        self._listeners: Dict[Any, str] = {}

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, listener: Any) -> bool:
        return listener in self._listeners

    def language_of(self, listener: Any) -> Optional[str]:
        return self._listeners.get(listener)

    def needed_languages(self) -> Set[str]:
        return set(self._listeners.values())

    def stats(self) -> Dict[str, Any]:
        breakdown = Counter(self._listeners.values())
        return {"total": len(self._listeners), "breakdown": dict(sorted(breakdown.items()))}

    def text_for(self, language: str, record: TranscriptRecord) -> Optional[str]:
        return record.text_for(language, self.passthrough_language)

    async def join(self, listener: Any, language: str) -> int:
        lang = str(language or "").strip() or self.passthrough_language
        previous = self._listeners.get(listener)
        self._listeners[listener] = lang
        logger.info(
            "listener join language=%s previous=%s total=%d",
            lang,
            previous or "",
            len(self._listeners),
        )
        await self.broadcast_stats()

        items = []
        for record in self.history.records():
            text = self.text_for(lang, record)
            if text is not None:
                items.append(live_item(text, record.timestamp))
        if listener in self._listeners:
            if not await self._try_send(listener, {"type": "history", "data": items}):
                await self._prune([listener])
        return len(items)

    async def leave(self, listener: Any) -> bool:
        if self._listeners.pop(listener, None) is None:
            return False
        logger.info("listener leave total=%d", len(self._listeners))
        await self.broadcast_stats()
        return True

    async def broadcast(self, record: TranscriptRecord) -> int:
        delivered = 0
        failed: List[Any] = []
        for listener, lang in list(self._listeners.items()):
            text = self.text_for(lang, record)
            if text is None:
                continue
            if await self._try_send(listener, live_item(text, record.timestamp)):
                delivered += 1
            else:
                failed.append(listener)
        if failed:
            await self._prune(failed)
        return delivered

    async def broadcast_meta(self, title: str) -> int:
        return await self._send_all({"type": "meta", "title": str(title or "")}, restat=True)

    async def broadcast_stats(self) -> int:
        return await self._send_all({"type": "stats", "data": self.stats()}, restat=False)

    async def _send_all(self, payload: Dict[str, Any], *, restat: bool) -> int:
        delivered = 0
        failed: List[Any] = []
        for listener in list(self._listeners):
            if await self._try_send(listener, payload):
                delivered += 1
            else:
                failed.append(listener)
        if failed:
            await self._prune(failed, restat=restat)
        return delivered

    async def _try_send(self, listener: Any, payload: Dict[str, Any]) -> bool:
        try:
            await listener.send_json(payload)
        except Exception as e:
            logger.info("listener send failed err=%s", e)
            return False
        return True

    async def _prune(self, listeners: Iterable[Any], *, restat: bool = True) -> None:
        removed = 0
        for listener in listeners:
            if self._listeners.pop(listener, None) is not None:
                removed += 1
        if removed:
            logger.info("pruned dead listeners count=%d total=%d", removed, len(self._listeners))
            if restat:
                await self.broadcast_stats()
