import json

import pytest

from spacerelay.streaming.history import SessionHistory, TranscriptRecord


def test_record_text_for_passthrough_and_translation():
    rec = TranscriptRecord(original="Hello world", translations={"French": "Bonjour le monde"}, timestamp=10.0)
    assert rec.text_for("English", "English") == "Hello world"
    assert rec.text_for("French", "English") == "Bonjour le monde"
    assert rec.text_for("German", "English") is None


def test_record_is_immutable():
    source = {"French": "Bonjour"}
    rec = TranscriptRecord(original="Hello", translations=source)
    source["German"] = "Hallo"
    assert "German" not in rec.translations
    with pytest.raises(TypeError):
        rec.translations["Italian"] = "Ciao"
    with pytest.raises(AttributeError):
        rec.original = "changed"


def test_history_evicts_oldest_when_full():
    history = SessionHistory(max_items=3)
    for i in range(5):
        history.append(TranscriptRecord(original=f"line {i}", timestamp=float(i)))
    assert len(history) == 3
    assert [r.original for r in history.records()] == ["line 2", "line 3", "line 4"]


def test_history_clear_empties_memory_only(tmp_path):
    log = tmp_path / "history.jsonl"
    history = SessionHistory(log_path=log)
    history.append(TranscriptRecord(original="Hello world", timestamp=1.0))
    history.clear()
    assert len(history) == 0
    assert len(log.read_text(encoding="utf-8").splitlines()) == 1


def test_history_appends_jsonl_rows(tmp_path):
    log = tmp_path / "logs" / "history.jsonl"
    history = SessionHistory(max_items=1, log_path=log)
    history.append(TranscriptRecord(original="Hello world", translations={"French": "Bonjour"}, timestamp=1.5))
    history.append(TranscriptRecord(original="Good night", translations={}, timestamp=2.5))
    rows = [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]
    assert rows == [
        {"timestamp": 1.5, "original": "Hello world", "translations": {"French": "Bonjour"}},
        {"timestamp": 2.5, "original": "Good night", "translations": {}},
    ]
    assert len(history) == 1


def test_history_log_failure_is_not_fatal(tmp_path):
    history = SessionHistory(log_path=tmp_path)
    history.append(TranscriptRecord(original="Hello world"))
    assert len(history) == 1


def test_append_can_defer_log_write(tmp_path):
    log = tmp_path / "history.jsonl"
    history = SessionHistory(log_path=log)
    record = TranscriptRecord(original="Hello world", timestamp=1.0)
    history.append(record, write_log=False)
    assert len(history) == 1
    assert not log.exists()
    history.write_log(record)
    assert json.loads(log.read_text(encoding="utf-8"))["original"] == "Hello world"
