# coding=utf-8
from __future__ import annotations

import asyncio
import enum
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from .history import SessionHistory, TranscriptRecord
from .ingest import SourceResolutionError
from .registry import ConnectionRegistry
from .segmenter import AudioSegment, AudioSegmenter

logger = logging.getLogger(__name__)


class SupervisorState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class BroadcastSession:
    source_url: str
    title: str
    source_code: str
    source_language: str
    started_at: float
    started_wall: float
    last_activity: float


class StreamSupervisor:
    """
    Own the single active broadcast: ingest, segmentation, per-segment
    processing and the watchdog.

    ``start`` and ``stop`` are serialised by one lock, so a new start always
    finishes tearing down the previous session before the new one exists.
    Every start and stop bumps ``generation``; segment tasks compare it
    before writing so a torn-down session never receives late results.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        history: SessionHistory,
        resolver: Any,
        decoder: Any,
        transcriber: Any,
        fan: Any,
        *,
        sample_rate: int = 16000,
        channels: int = 1,
        sample_width: int = 2,
        segment_seconds: float = 30.0,
        min_segment_rms: float = 0.0,
        watchdog_interval_sec: float = 60.0,
        max_duration_sec: float = 3 * 3600.0,
        max_silence_sec: float = 600.0,
        queue_poll_sec: float = 1.0,
        error_title: str = "ERROR: INVALID SOURCE",
        default_source_code: str = "en",
        default_source_language: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.history = history
        self.resolver = resolver
        self.decoder = decoder
        self.transcriber = transcriber
        self.fan = fan
        self.sample_rate = max(1, int(sample_rate))
        self.channels = max(1, int(channels))
        self.sample_width = max(1, int(sample_width))
        self.segment_seconds = max(0.001, float(segment_seconds))
        self.min_segment_rms = max(0.0, float(min_segment_rms))
        self.watchdog_interval_sec = max(0.01, float(watchdog_interval_sec))
        self.max_duration_sec = max(1.0, float(max_duration_sec))
        self.max_silence_sec = max(1.0, float(max_silence_sec))
        self.queue_poll_sec = max(0.01, float(queue_poll_sec))
        self.error_title = str(error_title)
        self.default_source_code = str(default_source_code or "en")
        self.default_source_language = str(default_source_language or registry.passthrough_language)
        self.clock = clock

        self._lock = asyncio.Lock()
        self._state = SupervisorState.IDLE
        self._generation = 0
        self._session: Optional[BroadcastSession] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._process: Any = None
        self._ingest_task: Optional[asyncio.Task] = None
        self._processing_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._segment_tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SupervisorState.RUNNING

    @property
    def session(self) -> Optional[BroadcastSession]:
        return self._session

    @property
    def title(self) -> str:
        return self._session.title if self._session is not None else ""

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def queue(self) -> asyncio.Queue:
        return self._queue

    @property
    def process(self) -> Any:
        return self._process

    def touch(self) -> None:
        if self._session is not None:
            self._session.last_activity = self.clock()

    def status(self) -> Dict[str, Any]:
        session = self._session
        now = self.clock()
        return {
            "state": self._state.value,
            "title": self.title,
            "source_url": session.source_url if session else "",
            "source_language": session.source_language if session else "",
            "uptime_sec": round(now - session.started_at, 1) if session else 0.0,
            "idle_sec": round(now - session.last_activity, 1) if session else 0.0,
            "generation": self._generation,
            "queue_depth": self._queue.qsize(),
            "segments_in_flight": len(self._segment_tasks),
        }

    async def start(
        self,
        url: str,
        *,
        source_code: Optional[str] = None,
        source_language: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            if self._state is not SupervisorState.IDLE or self._session is not None:
                logger.info("new stream requested while active, stopping previous session")
                await self._stop_locked(reason="superseded")

            self._state = SupervisorState.STARTING
            self._generation += 1
            generation = self._generation
            try:
                resolved = await self.resolver.resolve(url)
            except SourceResolutionError as e:
                logger.warning("source resolution failed url=%s err=%s", url, e)
                self._state = SupervisorState.IDLE
                await self.registry.broadcast_meta(self.error_title)
                return False

            self.history.clear()
            now = self.clock()
            self._session = BroadcastSession(
                source_url=str(url),
                title=resolved.title,
                source_code=str(source_code or self.default_source_code),
                source_language=str(source_language or self.default_source_language),
                started_at=now,
                started_wall=time.time(),
                last_activity=now,
            )
            self._queue = asyncio.Queue()
            await self.registry.broadcast_meta(resolved.title)

            queue = self._queue
            self._ingest_task = asyncio.create_task(self._run_ingest(resolved.stream_url, queue, generation))
            self._processing_task = asyncio.create_task(self._process_audio(queue, generation))
            self._watchdog_task = asyncio.create_task(self._watchdog_loop(generation))
            self._state = SupervisorState.RUNNING
            logger.info(
                "stream started generation=%d title=%s source_code=%s source_language=%s",
                generation,
                resolved.title,
                self._session.source_code,
                self._session.source_language,
            )
            return True

    async def stop(self, reason: str = "requested") -> None:
        async with self._lock:
            await self._stop_locked(reason=reason)

    async def _stop_locked(self, reason: str) -> None:
        previous = self._state
        self._state = SupervisorState.STOPPING
        self._generation += 1

        process, self._process = self._process, None
        if process is not None:
            with suppress(Exception):
                await self.decoder.terminate(process)

        current = asyncio.current_task()
        tasks = [self._ingest_task, self._processing_task, *self._segment_tasks]
        for task in tasks:
            if task is not None and not task.done():
                task.cancel()
        for task in tasks:
            if task is not None:
                with suppress(asyncio.CancelledError, Exception):
                    await task
        watchdog = self._watchdog_task
        if watchdog is not None and watchdog is not current and not watchdog.done():
            watchdog.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await watchdog

        self._ingest_task = None
        self._processing_task = None
        self._watchdog_task = None
        self._segment_tasks.clear()
        self._queue = asyncio.Queue()
        self._session = None
        self._state = SupervisorState.IDLE

        await self.registry.broadcast_meta("")
        self.history.clear()
        logger.info("stream stopped reason=%s previous_state=%s generation=%d", reason, previous.value, self._generation)

    async def _run_ingest(self, stream_url: str, queue: asyncio.Queue, generation: int) -> None:
        process = None
        total = 0
        try:
            try:
                process = await self.decoder.spawn(stream_url)
            except Exception as e:
                logger.error("decoder spawn failed err=%s", e)
                return
            if generation != self._generation:
                return
            self._process = process

            chunk_bytes = int(getattr(self.decoder, "chunk_bytes", 4096))
            while generation == self._generation:
                chunk = await process.stdout.read(chunk_bytes)
                if not chunk:
                    break
                total += len(chunk)
                self.touch()
                await queue.put(chunk)
            logger.info("ingest ended generation=%d bytes=%d", generation, total)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("ingest read failed generation=%d bytes=%d err=%s", generation, total, e)
        finally:
            # A process spawned for a superseded generation is never handed to stop().
            if process is not None and generation != self._generation:
                with suppress(Exception):
                    await self.decoder.terminate(process)

    async def _process_audio(self, queue: asyncio.Queue, generation: int) -> None:
        segmenter = AudioSegmenter(
            sample_rate=self.sample_rate,
            channels=self.channels,
            sample_width=self.sample_width,
            segment_seconds=self.segment_seconds,
        )
        while generation == self._generation:
            try:
                chunk = await asyncio.wait_for(queue.get(), timeout=self.queue_poll_sec)
            except asyncio.TimeoutError:
                continue
            segment = segmenter.feed(chunk)
            if segment is None:
                continue
            logger.info(
                "segment dispatched index=%d bytes=%d duration_sec=%.1f rms=%.4f",
                segment.index,
                len(segment.pcm),
                segment.duration_sec,
                segment.rms,
            )
            task = asyncio.create_task(self._handle_segment(segment, generation))
            self._segment_tasks.add(task)
            task.add_done_callback(self._segment_tasks.discard)

    async def _handle_segment(self, segment: AudioSegment, generation: int) -> Optional[TranscriptRecord]:
        try:
            if self.min_segment_rms > 0 and segment.rms < self.min_segment_rms:
                logger.info("segment below silence gate index=%d rms=%.4f", segment.index, segment.rms)
                return None
            session = self._session
            source_code = session.source_code if session else self.default_source_code
            source_language = session.source_language if session else self.default_source_language

            text = await self.transcriber.transcribe(segment.wav, language=source_code)
            if not text or generation != self._generation:
                return None
            self.touch()

            languages = self.registry.needed_languages()
            translations = await self.fan.translate_all(text, languages, source_language=source_language)
            if generation != self._generation:
                return None

            record = TranscriptRecord(original=text, translations=translations, timestamp=time.time())
            self.history.append(record, write_log=False)
            delivered = await self.registry.broadcast(record)
            logger.info(
                "segment broadcast index=%d languages=%d delivered=%d",
                segment.index,
                len(translations),
                delivered,
            )
            await asyncio.to_thread(self.history.write_log, record)
            return record
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("segment processing failed index=%d", segment.index)
            return None

    def watchdog_trip_reason(self, now: Optional[float] = None) -> Optional[str]:
        session = self._session
        if session is None:
            return None
        t = self.clock() if now is None else float(now)
        if t - session.started_at > self.max_duration_sec:
            return "max_duration"
        if t - session.last_activity > self.max_silence_sec:
            return "silence"
        return None

    async def watchdog_tick(self) -> bool:
        reason = self.watchdog_trip_reason()
        if reason is None:
            return False
        logger.warning("watchdog tripped reason=%s", reason)
        await self.stop(reason=f"watchdog_{reason}")
        return True

    async def _watchdog_loop(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.watchdog_interval_sec)
            if generation != self._generation:
                return
            if await self.watchdog_tick():
                return
