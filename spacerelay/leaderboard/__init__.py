# coding=utf-8

from .store import DEFAULT_CLIENT_SECRET, LeaderboardStore, SubmitResult, rolling_hash, sign_submission

__all__ = [
    "DEFAULT_CLIENT_SECRET",
    "LeaderboardStore",
    "SubmitResult",
    "rolling_hash",
    "sign_submission",
]
