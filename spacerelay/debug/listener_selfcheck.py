from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List


@dataclass
class ListenerSelfcheckResult:
    meta_count: int
    history_messages: int
    history_items: int
    stats_count: int
    live_count: int
    error_count: int
    fatal_errors: int
    timestamp_regressions: int
    max_listeners: int
    titles: List[str] = field(default_factory=list)
    examples: List[Dict[str, Any]] = field(default_factory=list)


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def analyze_listener_events(events: Iterable[Dict[str, Any]]) -> ListenerSelfcheckResult:
    meta_count = 0
    history_messages = 0
    history_items = 0
    stats_count = 0
    live_count = 0
    error_count = 0
    fatal_errors = 0
    regressions = 0
    max_listeners = 0
    titles: List[str] = []
    examples: List[Dict[str, Any]] = []
    prev_ts = None

    for idx, msg in enumerate(events):
        if not isinstance(msg, dict):
            continue
        msg_type = str(msg.get("type", "") or "").lower()

        if msg_type == "meta":
            meta_count += 1
            title = str(msg.get("title", "") or "")
            if not titles or titles[-1] != title:
                titles.append(title)
            continue
        if msg_type == "history":
            history_messages += 1
            data = msg.get("data")
            history_items += len(data) if isinstance(data, list) else 0
            prev_ts = None
            continue
        if msg_type == "stats":
            stats_count += 1
            data = msg.get("data") if isinstance(msg.get("data"), dict) else {}
            max_listeners = max(max_listeners, int(data.get("total", 0) or 0))
            continue
        if "error" in msg:
            error_count += 1
            if msg.get("fatal"):
                fatal_errors += 1
                if len(examples) < 8:
                    examples.append({"kind": "fatal_error", "index": idx, "error": str(msg.get("error"))[:160]})
            continue
        if "transcript" not in msg:
            continue

        live_count += 1
        ts = _as_float(msg.get("timestamp"))
        # Segments are processed concurrently, so a later message may carry an earlier timestamp.
        if prev_ts is not None and ts < prev_ts:
            regressions += 1
            if len(examples) < 8:
                examples.append(
                    {
                        "kind": "timestamp_regression",
                        "index": idx,
                        "prev_ts": prev_ts,
                        "ts": ts,
                        "text": str(msg.get("transcript", ""))[:160],
                    }
                )
        prev_ts = ts

    return ListenerSelfcheckResult(
        meta_count=meta_count,
        history_messages=history_messages,
        history_items=history_items,
        stats_count=stats_count,
        live_count=live_count,
        error_count=error_count,
        fatal_errors=fatal_errors,
        timestamp_regressions=regressions,
        max_listeners=max_listeners,
        titles=titles,
        examples=examples,
    )


def summarize_result(result: ListenerSelfcheckResult) -> str:
    lines = [
        f"meta={result.meta_count}",
        f"history_messages={result.history_messages}",
        f"history_items={result.history_items}",
        f"stats={result.stats_count}",
        f"live={result.live_count}",
        f"errors={result.error_count}",
        f"fatal_errors={result.fatal_errors}",
        f"timestamp_regressions={result.timestamp_regressions}",
        f"max_listeners={result.max_listeners}",
        f"titles={result.titles}",
    ]
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)
