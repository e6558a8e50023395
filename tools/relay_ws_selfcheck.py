#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List

import websockets

from spacerelay.debug.listener_selfcheck import analyze_listener_events, summarize_result


async def _recv_loop(ws, events: List[Dict[str, Any]], stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=0.5)
        except asyncio.TimeoutError:
            continue
        except Exception:
            break
        if isinstance(raw, bytes):
            continue
        msg = json.loads(raw)
        events.append(msg)
        if msg.get("fatal"):
            stop.set()


async def _listen(ws_url: str, language: str, duration_sec: float) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    stop = asyncio.Event()

    async with websockets.connect(ws_url, max_size=16 * 1024 * 1024) as ws:
        await ws.send(json.dumps({"action": "join", "target_language": language}))
        recv_task = asyncio.create_task(_recv_loop(ws, events, stop))
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(0.1, float(duration_sec)))
        except asyncio.TimeoutError:
            pass
        stop.set()
        await recv_task

    return events


def _load_events_jsonl(path: Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            events.append(json.loads(text))
    return events


def _save_events_jsonl(path: Path, events: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for event in events:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Join a relay as a listener and self-check the received stream.")
    p.add_argument("--ws-url", default="ws://127.0.0.1:8000/ws")
    p.add_argument("--language", default="English")
    p.add_argument("--duration-sec", type=float, default=120.0, help="How long to listen")
    p.add_argument("--listen", action="store_true", help="Connect and record instead of loading --events-jsonl")
    p.add_argument("--events-jsonl", default="", help="save recorded events to jsonl; or load existing without --listen")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    if args.listen:
        events = asyncio.run(
            _listen(
                ws_url=str(args.ws_url),
                language=str(args.language),
                duration_sec=float(args.duration_sec),
            )
        )
        if events_path is not None:
            _save_events_jsonl(events_path, events)
    else:
        if events_path is None:
            raise SystemExit("provide --listen to record, or --events-jsonl to load existing events")
        events = _load_events_jsonl(events_path)

    result = analyze_listener_events(events)
    print(summarize_result(result))


if __name__ == "__main__":
    main()
