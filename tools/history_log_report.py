#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List


def _parse_history_rows(path: Path) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            raw = line.strip()
            if not raw:
                continue
            try:
                row = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(row, dict) or "original" not in row:
                continue
            rows.append(row)
    return rows


def _fmt_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _summarize(rows: List[Dict[str, Any]]) -> str:
    lines: List[str] = [f"records={len(rows)}"]
    if not rows:
        return "\n".join(lines)

    stamps = sorted(float(r.get("timestamp", 0) or 0) for r in rows)
    coverage: Counter = Counter()
    fallbacks: Counter = Counter()
    chars = 0
    for row in rows:
        original = str(row.get("original", "") or "")
        chars += len(original)
        translations = row.get("translations") if isinstance(row.get("translations"), dict) else {}
        for lang, text in translations.items():
            coverage[lang] += 1
            if str(text or "") == original:
                fallbacks[lang] += 1

    lines.append(f"span={_fmt_ts(stamps[0])} .. {_fmt_ts(stamps[-1])} ({stamps[-1] - stamps[0]:.0f}s)")
    lines.append(f"original_chars={chars}")
    for lang, count in sorted(coverage.items(), key=lambda x: (-x[1], x[0])):
        lines.append(f"  - language={lang} records={count} untranslated={fallbacks.get(lang, 0)}")
    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Summarize the relay's append-only transcript log.")
    p.add_argument("--log", required=True, help="Path to the history JSONL file")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    log_path = Path(args.log).expanduser()
    rows = _parse_history_rows(log_path)
    print(_summarize(rows))


if __name__ == "__main__":
    main()
