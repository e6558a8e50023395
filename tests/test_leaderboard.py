import pytest

from spacerelay.leaderboard import DEFAULT_CLIENT_SECRET, LeaderboardStore, rolling_hash, sign_submission

NOW = 10_000.0


def _store(**kwargs):
    kwargs.setdefault("clock", lambda: NOW)
    return LeaderboardStore(**kwargs)


def test_rolling_hash_matches_java_string_hash():
    assert rolling_hash("") == 0
    assert rolling_hash("abc") == 96354
    assert rolling_hash("hello") == 99162322


def test_rolling_hash_wraps_to_signed_32_bit():
    assert rolling_hash("polygenelubricants") == -2147483648


def test_sign_submission_uses_name_score_secret():
    assert sign_submission("AAA", 500) == str(rolling_hash(f"AAA500{DEFAULT_CLIENT_SECRET}"))
    assert sign_submission("AAA", 500, secret="other") != sign_submission("AAA", 500)


def test_valid_submission_is_accepted_and_listed():
    store = _store()
    sig = sign_submission("AAA", 500)
    result = store.submit("AAA", 500, NOW - 60.0, sig)
    assert result.accepted is True
    assert result.to_payload() == {"status": "ok"}
    assert store.list() == [{"name": "AAA", "score": 500, "timestamp": NOW}]


def test_integer_signature_is_accepted():
    store = _store()
    sig = int(sign_submission("Bob", 42))
    assert store.submit("Bob", 42, NOW - 5.0, sig).accepted is True


@pytest.mark.parametrize(
    "name,score",
    [
        ("AAB", 500),
        ("AA", 500),
        ("AAA", 501),
        ("AAA", 50),
    ],
)
def test_mutated_submission_fails_signature(name, score):
    store = _store()
    sig = sign_submission("AAA", 500)
    result = store.submit(name, score, NOW - 60.0, sig)
    assert result.accepted is False
    assert result.reason == "signature_mismatch"
    assert store.list() == []


def test_impossible_speed_rejected():
    store = _store(max_points_per_sec=50.0, min_checked_score=1000)
    result = store.submit("Zed", 100_000, NOW - 1.0, sign_submission("Zed", 100_000))
    assert result.reason == "impossible_speed"
    assert result.to_payload() == {"status": "rejected", "reason": "impossible_speed"}


def test_plausible_speed_accepted():
    store = _store(max_points_per_sec=50.0, min_checked_score=1000)
    assert store.submit("Zed", 1000, NOW - 100.0, sign_submission("Zed", 1000)).accepted is True


def test_small_scores_skip_speed_check():
    store = _store(max_points_per_sec=50.0, min_checked_score=1000)
    assert store.submit("Amy", 900, NOW, sign_submission("Amy", 900)).accepted is True


def test_invalid_name_and_score_rejected():
    store = _store()
    assert store.submit("", 10, NOW, sign_submission("", 10)).reason == "invalid_name"
    assert store.submit("x" * 40, 10, NOW, "0").reason == "invalid_name"
    assert store.submit("Amy", -5, NOW, sign_submission("Amy", -5)).reason == "invalid_score"
    assert store.submit("Amy", 1.5, NOW, "0").reason == "invalid_score"
    assert store.submit("Amy", True, NOW, "0").reason == "invalid_score"


def test_list_orders_by_score_then_age():
    ticks = iter([1.0, 2.0, 3.0])
    store = LeaderboardStore(clock=lambda: next(ticks), min_checked_score=10**9)
    store.submit("Low", 10, 0, sign_submission("Low", 10))
    store.submit("HighOld", 90, 0, sign_submission("HighOld", 90))
    store.submit("HighNew", 90, 0, sign_submission("HighNew", 90))
    assert [r["name"] for r in store.list()] == ["HighOld", "HighNew", "Low"]
    assert len(store.list(limit=1)) == 1


def test_clear_requires_configured_admin_key():
    store = _store(admin_key="s3cret")
    store.submit("AAA", 500, NOW, sign_submission("AAA", 500))
    assert store.clear("wrong") is False
    assert store.clear("") is False
    assert len(store.list()) == 1
    assert store.clear("s3cret") is True
    assert store.list() == []


def test_clear_disabled_without_admin_key():
    store = _store()
    assert store.clear("") is False
    assert store.clear("anything") is False


def test_scores_persist_in_file(tmp_path):
    path = str(tmp_path / "scores.sqlite3")
    store = _store(path=path)
    store.submit("AAA", 500, NOW, sign_submission("AAA", 500))
    store.close()
    reopened = _store(path=path)
    assert reopened.list()[0]["name"] == "AAA"
    reopened.close()
