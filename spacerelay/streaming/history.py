# coding=utf-8
from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Deque, Dict, List, Mapping, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptRecord:
    original: str
    translations: Mapping[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "translations", MappingProxyType(dict(self.translations)))

    def text_for(self, language: str, passthrough_language: str) -> Optional[str]:
        if language == passthrough_language:
            return self.original
        return self.translations.get(language)

    def to_log_row(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "original": self.original,
            "translations": dict(self.translations),
        }


class SessionHistory:
    """
    Bounded in-memory transcript log for replay-on-join, mirrored to an
    append-only JSONL file that the server never reads back.
    """

    def __init__(self, max_items: int = 500, log_path: Optional[Union[str, Path]] = None) -> None:
        self.max_items = max(1, int(max_items))
        self.log_path = Path(log_path).expanduser() if log_path else None
        self._items: Deque[TranscriptRecord] = deque(maxlen=self.max_items)
        self._log_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def append(self, record: TranscriptRecord, *, write_log: bool = True) -> None:
        self._items.append(record)
        if write_log:
            self.write_log(record)

    def records(self) -> List[TranscriptRecord]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()

    def write_log(self, record: TranscriptRecord) -> None:
        """Append one JSON line; safe to call from worker threads."""
        if self.log_path is None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self._log_lock, self.log_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record.to_log_row(), ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("history log write failed path=%s err=%s", self.log_path, e)
