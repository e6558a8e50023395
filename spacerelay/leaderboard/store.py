# coding=utf-8
"""
Minigame leaderboard.

Submissions carry a signature computed client-side with a shared secret that
ships inside the client bundle, plus the game start time. Both checks only
filter out casual tampering; neither is a security boundary.
"""
from __future__ import annotations

import logging
import secrets
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_SECRET = "XSPACE_CLIENT_SECRET_98"


def rolling_hash(text: str) -> int:
    """Java-style 32-bit string hash over UTF-16 code units, as signed int."""
    raw = str(text).encode("utf-16-le", errors="surrogatepass")
    h = 0
    for i in range(0, len(raw), 2):
        unit = raw[i] | (raw[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def sign_submission(name: str, score: int, secret: str = DEFAULT_CLIENT_SECRET) -> str:
    return str(rolling_hash(f"{name}{int(score)}{secret}"))


@dataclass(frozen=True)
class SubmitResult:
    accepted: bool
    reason: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        if self.accepted:
            return {"status": "ok"}
        return {"status": "rejected", "reason": self.reason}


class LeaderboardStore:
    def __init__(
        self,
        path: str = ":memory:",
        secret: str = DEFAULT_CLIENT_SECRET,
        admin_key: str = "",
        max_points_per_sec: float = 50.0,
        min_checked_score: int = 1000,
        max_name_chars: int = 16,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = str(path or ":memory:")
        self.secret = str(secret)
        self.admin_key = str(admin_key or "")
        self.max_points_per_sec = max(0.001, float(max_points_per_sec))
        self.min_checked_score = max(0, int(min_checked_score))
        self.max_name_chars = max(1, int(max_name_chars))
        self.clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        with self._lock, self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS scores ("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, "
                "name TEXT NOT NULL, "
                "score INTEGER NOT NULL, "
                "timestamp REAL NOT NULL)"
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def validate(self, name: Any, score: Any, start_time: Any, signature: Any) -> SubmitResult:
        nick = str(name or "").strip()
        if not nick or len(nick) > self.max_name_chars:
            return SubmitResult(False, "invalid_name")
        if isinstance(score, bool):
            return SubmitResult(False, "invalid_score")
        try:
            points = int(score)
        except (TypeError, ValueError):
            return SubmitResult(False, "invalid_score")
        if points < 0 or points != score:
            return SubmitResult(False, "invalid_score")

        expected = sign_submission(nick, points, self.secret)
        if str(signature).strip() != expected:
            return SubmitResult(False, "signature_mismatch")

        if points >= self.min_checked_score:
            try:
                started = float(start_time)
            except (TypeError, ValueError):
                return SubmitResult(False, "impossible_speed")
            elapsed = max(0.0, self.clock() - started)
            if points / max(elapsed, 1.0) > self.max_points_per_sec:
                return SubmitResult(False, "impossible_speed")
        return SubmitResult(True)

    def submit(self, name: Any, score: Any, start_time: Any, signature: Any) -> SubmitResult:
        result = self.validate(name, score, start_time, signature)
        if not result.accepted:
            logger.info("score rejected name=%s score=%s reason=%s", name, score, result.reason)
            return result
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO scores (name, score, timestamp) VALUES (?, ?, ?)",
                (str(name).strip(), int(score), float(self.clock())),
            )
        logger.info("score accepted name=%s score=%s", name, score)
        return result

    def list(self, limit: int = 10) -> List[Dict[str, Any]]:
        n = max(1, min(100, int(limit)))
        with self._lock:
            rows = self._conn.execute(
                "SELECT name, score, timestamp FROM scores ORDER BY score DESC, timestamp ASC, id ASC LIMIT ?",
                (n,),
            ).fetchall()
        return [{"name": r[0], "score": int(r[1]), "timestamp": float(r[2])} for r in rows]

    def clear(self, admin_key: Any) -> bool:
        if not self.admin_key:
            return False
        if not secrets.compare_digest(str(admin_key or "").encode("utf-8"), self.admin_key.encode("utf-8")):
            return False
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM scores")
        logger.warning("leaderboard cleared")
        return True
