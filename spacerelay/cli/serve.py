# coding=utf-8
# Copyright 2026 The SpaceRelay Authors.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Broadcast relay server: one upstream Space, many WebSocket listeners.
"""
import argparse
import asyncio
import fcntl
import json
import logging
import os
import secrets
import socket
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Optional, Set, Union

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from spacerelay.leaderboard import DEFAULT_CLIENT_SECRET, LeaderboardStore
from spacerelay.streaming import (
    ConnectionRegistry,
    FfmpegDecoder,
    KeyRing,
    OpenAIAPIClient,
    SessionHistory,
    SourceResolver,
    StreamSupervisor,
    Transcriber,
    TranslationFan,
)

SAMPLE_RATE = 16000
logger = logging.getLogger(__name__)
_INSTANCE_LOCK_HANDLE: Optional[Any] = None


def _instance_lock_path(port: int) -> Path:
    safe_port = int(port)
    return Path("/tmp") / f"spacerelay_serve_{safe_port}.lock"


def _acquire_instance_lock_or_raise(port: int, lock_path: Optional[Path] = None):
    target = Path(lock_path) if lock_path is not None else _instance_lock_path(port)
    target.parent.mkdir(parents=True, exist_ok=True)
    handle = target.open("a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as exc:
        holder = ""
        with suppress(Exception):
            handle.seek(0)
            holder = handle.read().strip()
        with suppress(Exception):
            handle.close()
        holder_suffix = f" (holder pid: {holder})" if holder else ""
        raise RuntimeError(
            f"another spacerelay instance is already running for port {int(port)}{holder_suffix}"
        ) from exc
    handle.seek(0)
    handle.truncate(0)
    handle.write(str(os.getpid()))
    handle.flush()
    return handle


def _release_instance_lock(handle) -> None:
    if handle is None:
        return
    with suppress(Exception):
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    with suppress(Exception):
        handle.close()


def _assert_port_bindable(host: str, port: int) -> None:
    bind_host = str(host or "0.0.0.0").strip() or "0.0.0.0"
    if bind_host == "*":
        bind_host = "0.0.0.0"
    bind_port = int(port)
    try:
        addr_infos = socket.getaddrinfo(
            bind_host,
            bind_port,
            family=socket.AF_UNSPEC,
            type=socket.SOCK_STREAM,
            proto=socket.IPPROTO_TCP,
            flags=socket.AI_PASSIVE,
        )
    except socket.gaierror as exc:
        raise RuntimeError(f"invalid bind host '{bind_host}': {exc}") from exc

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, sockaddr in addr_infos:
        sock = socket.socket(family, socktype, proto)
        with suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(sockaddr)
            return
        except OSError as exc:
            last_error = exc
        finally:
            sock.close()

    if last_error is None:
        raise RuntimeError(f"bind {bind_host}:{bind_port} is not available")
    raise RuntimeError(f"bind {bind_host}:{bind_port} is not available: {last_error}") from last_error


def _parse_json_message(text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid json: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("json message must be an object")
    return payload


def _is_admin(configured_key: str, supplied: Any) -> bool:
    if not configured_key:
        return True
    return secrets.compare_digest(str(supplied or "").encode("utf-8"), configured_key.encode("utf-8"))


class WebSocketListener:
    """One registry handle per socket; sends are serialised per socket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        client = websocket.client
        self.peer = f"{client.host}:{client.port}" if client else "unknown"

    async def send_json(self, payload: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json(payload)


class ScoreSubmission(BaseModel):
    name: str
    score: int
    start_time: float
    signature: Union[str, int]


def _create_app(args: argparse.Namespace, supervisor: StreamSupervisor, leaderboard: LeaderboardStore) -> FastAPI:
    registry = supervisor.registry
    admin_key = str(getattr(args, "admin_key", "") or "")
    runtime = SimpleNamespace(background=set())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await supervisor.stop(reason="shutdown")
        pending: Set[asyncio.Task] = set(runtime.background)
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError, Exception):
                await task

    app = FastAPI(title="SpaceRelay Broadcast Server", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        if request.method == "POST" and request.url.path == "/scores":
            logger.info("score rejected reason=invalid_body errors=%d", len(exc.errors()))
            return JSONResponse({"status": "rejected", "reason": "invalid_body"})
        return await request_validation_exception_handler(request, exc)

    def _spawn(coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        runtime.background.add(task)
        task.add_done_callback(runtime.background.discard)
        return task

    @app.get("/api/status")
    async def api_status() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "service": "spacerelay",
            "stream": supervisor.status(),
            "listeners": registry.stats(),
            "history_items": len(supervisor.history),
            "passthrough_language": registry.passthrough_language,
        }

    @app.get("/scores")
    def list_scores(limit: int = 10):
        return leaderboard.list(limit)

    @app.post("/scores")
    def submit_score(submission: ScoreSubmission) -> Dict[str, Any]:
        result = leaderboard.submit(
            submission.name,
            submission.score,
            submission.start_time,
            submission.signature,
        )
        return result.to_payload()

    @app.delete("/scores")
    def clear_scores(key: str = "") -> Dict[str, Any]:
        if not leaderboard.clear(key):
            raise HTTPException(status_code=403, detail="forbidden")
        return {"status": "ok"}

    @app.websocket("/ws")
    async def ws_relay(websocket: WebSocket) -> None:
        await websocket.accept()
        listener = WebSocketListener(websocket)
        logger.info("ws open peer=%s", listener.peer)

        try:
            while True:
                text = await websocket.receive_text()
                try:
                    payload = _parse_json_message(text)
                except ValueError as e:
                    await listener.send_json({"error": str(e), "fatal": False})
                    continue

                action = str(payload.get("action", "") or "").strip().lower()
                if action == "join":
                    language = str(payload.get("target_language", "") or "").strip()
                    replayed = await registry.join(listener, language)
                    if listener in registry:
                        await listener.send_json({"type": "meta", "title": supervisor.title})
                    logger.info(
                        "ws join peer=%s language=%s replayed=%d",
                        listener.peer,
                        registry.language_of(listener) or "",
                        replayed,
                    )
                    continue

                if action in {"stream", "stop"}:
                    if not _is_admin(admin_key, payload.get("key")):
                        logger.warning("ws forbidden action=%s peer=%s", action, listener.peer)
                        await listener.send_json({"error": "forbidden", "fatal": False})
                        continue
                    if action == "stop":
                        _spawn(supervisor.stop(reason="admin"))
                        continue
                    url = str(payload.get("url", "") or "").strip()
                    if not url:
                        await listener.send_json({"error": "missing url", "fatal": False})
                        continue
                    logger.info("ws stream request peer=%s url=%s", listener.peer, url)
                    _spawn(
                        supervisor.start(
                            url,
                            source_code=payload.get("src_code") or None,
                            source_language=payload.get("source_language") or None,
                        )
                    )
                    continue

                if action == "ping":
                    await listener.send_json({"type": "pong"})
                    continue

                await listener.send_json({"error": "unknown action", "fatal": False})

        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning("ws error peer=%s err=%s", listener.peer, e)
            with suppress(Exception):
                await listener.send_json({"error": str(e), "fatal": True})
        finally:
            await registry.leave(listener)
            with suppress(Exception):
                await websocket.close(code=1000)
            logger.info("ws close peer=%s listeners=%d", listener.peer, len(registry))

    return app


def build_supervisor(args: argparse.Namespace) -> StreamSupervisor:
    keys = KeyRing.from_csv(args.api_keys)
    client = OpenAIAPIClient(base_url=args.api_base_url, timeout_sec=args.api_timeout_sec)
    history = SessionHistory(max_items=args.history_max_items, log_path=args.history_log or None)
    registry = ConnectionRegistry(history, passthrough_language=args.passthrough_language)
    transcriber = Transcriber(
        client,
        keys,
        model=args.transcription_model,
        language=args.source_code,
        min_chars=args.min_transcript_chars,
    )
    fan = TranslationFan(
        client,
        keys,
        model=args.translation_model,
        passthrough_language=args.passthrough_language,
        source_language=args.source_language or args.passthrough_language,
        temperature=args.translation_temperature,
        max_tokens=args.translation_max_tokens,
        rate_limit_backoff_sec=args.rate_limit_backoff_sec,
    )
    decoder = FfmpegDecoder(
        ffmpeg_bin=args.ffmpeg_bin,
        sample_rate=SAMPLE_RATE,
        realtime=args.realtime,
        chunk_bytes=args.read_chunk_bytes,
    )
    return StreamSupervisor(
        registry,
        history,
        SourceResolver(timeout_sec=args.resolve_timeout_sec),
        decoder,
        transcriber,
        fan,
        sample_rate=SAMPLE_RATE,
        segment_seconds=args.segment_sec,
        min_segment_rms=args.min_segment_rms,
        watchdog_interval_sec=args.watchdog_interval_sec,
        max_duration_sec=args.max_duration_sec,
        max_silence_sec=args.max_silence_sec,
        error_title=args.error_title,
        default_source_code=args.source_code,
        default_source_language=args.source_language or args.passthrough_language,
    )


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="SpaceRelay broadcast server (HTTP + WebSocket)")
    p.add_argument("--host", default="0.0.0.0", help="Bind host")
    p.add_argument("--port", type=int, default=8000, help="Bind port")
    p.add_argument(
        "--api-base-url",
        default=os.environ.get("SPACERELAY_API_BASE_URL", "https://api.groq.com/openai/v1"),
        help="OpenAI-compatible API base URL used for transcription and translation",
    )
    p.add_argument(
        "--api-keys",
        default=os.environ.get("SPACERELAY_API_KEYS", ""),
        help="Comma-separated API keys, rotated round-robin on rate limiting",
    )
    p.add_argument("--api-timeout-sec", type=float, default=60.0, help="Timeout seconds for each upstream request")
    p.add_argument("--transcription-model", default="whisper-large-v3")
    p.add_argument("--translation-model", default="llama-3.3-70b-versatile")
    p.add_argument("--translation-temperature", type=float, default=0.3)
    p.add_argument("--translation-max-tokens", type=int, default=1024)
    p.add_argument(
        "--rate-limit-backoff-sec",
        type=float,
        default=1.0,
        help="Pause between credential rotations when a translation is rate limited",
    )
    p.add_argument(
        "--passthrough-language",
        default="English",
        help="Listeners of this language receive the original transcript untranslated",
    )
    p.add_argument("--source-code", default="en", help="Default spoken-language code sent to transcription")
    p.add_argument(
        "--source-language",
        default="",
        help="Default spoken-language name used in translation prompts (defaults to the pass-through language)",
    )
    p.add_argument(
        "--min-transcript-chars",
        type=int,
        default=5,
        help="Transcripts with this many characters or fewer are treated as silence",
    )
    p.add_argument("--segment-sec", type=float, default=30.0, help="Audio seconds per transcription segment")
    p.add_argument(
        "--min-segment-rms",
        type=float,
        default=0.0,
        help="Skip transcription for segments below this normalised RMS level (0 disables)",
    )
    p.add_argument("--ffmpeg-bin", default="ffmpeg")
    p.add_argument(
        "--realtime",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Read the upstream at native rate (ffmpeg -re)",
    )
    p.add_argument("--read-chunk-bytes", type=int, default=4096)
    p.add_argument("--resolve-timeout-sec", type=float, default=30.0, help="Upper bound for source URL resolution")
    p.add_argument("--watchdog-interval-sec", type=float, default=60.0)
    p.add_argument("--max-duration-sec", type=float, default=3 * 3600.0, help="Hard ceiling for one broadcast")
    p.add_argument("--max-silence-sec", type=float, default=600.0, help="Stop after this long without activity")
    p.add_argument("--error-title", default="ERROR: INVALID SOURCE")
    p.add_argument("--history-max-items", type=int, default=500)
    p.add_argument(
        "--history-log",
        default="spacerelay_history.jsonl",
        help="Append-only JSONL transcript log (empty disables)",
    )
    p.add_argument(
        "--admin-key",
        default=os.environ.get("SPACERELAY_ADMIN_KEY", ""),
        help="Shared key for stream control and leaderboard reset (empty leaves stream control open)",
    )
    p.add_argument("--leaderboard-db", default="leaderboard.sqlite3")
    p.add_argument(
        "--leaderboard-secret",
        default=os.environ.get("SPACERELAY_LEADERBOARD_SECRET", DEFAULT_CLIENT_SECRET),
    )
    p.add_argument("--leaderboard-max-pps", type=float, default=50.0, help="Points-per-second plausibility ceiling")
    p.add_argument("--leaderboard-min-checked-score", type=int, default=1000)
    p.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    return p.parse_args()


def main() -> None:
    global _INSTANCE_LOCK_HANDLE
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    if not str(args.api_keys or "").strip():
        logger.error("no api keys configured (set --api-keys or SPACERELAY_API_KEYS)")
        raise SystemExit(2)
    try:
        _INSTANCE_LOCK_HANDLE = _acquire_instance_lock_or_raise(args.port)
        _assert_port_bindable(args.host, args.port)
    except RuntimeError as exc:
        _release_instance_lock(_INSTANCE_LOCK_HANDLE)
        _INSTANCE_LOCK_HANDLE = None
        logger.error("startup guard failed: %s", exc)
        raise SystemExit(2) from exc

    leaderboard = LeaderboardStore(
        path=args.leaderboard_db,
        secret=args.leaderboard_secret,
        admin_key=args.admin_key,
        max_points_per_sec=args.leaderboard_max_pps,
        min_checked_score=args.leaderboard_min_checked_score,
    )
    try:
        supervisor = build_supervisor(args)
        app = _create_app(args, supervisor, leaderboard)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    finally:
        leaderboard.close()
        _release_instance_lock(_INSTANCE_LOCK_HANDLE)
        _INSTANCE_LOCK_HANDLE = None


if __name__ == "__main__":
    main()
