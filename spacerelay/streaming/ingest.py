# coding=utf-8
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yt_dlp

logger = logging.getLogger(__name__)


class SourceResolutionError(RuntimeError):
    pass


@dataclass(frozen=True)
class ResolvedSource:
    stream_url: str
    title: str


class SourceResolver:
    """
    Turn an opaque broadcast URL into a playable media URL and a title.

    Extraction runs in a worker thread and is bounded by ``timeout_sec``.
    """

    def __init__(self, timeout_sec: float = 30.0, ydl_opts: Optional[Dict[str, Any]] = None) -> None:
        self.timeout_sec = max(0.1, float(timeout_sec))
        # socket_timeout bounds the worker thread too; wait_for cannot stop it.
        opts = {
            "format": "bestaudio/best",
            "quiet": True,
            "noplaylist": True,
            "no_warnings": True,
            "socket_timeout": self.timeout_sec,
        }
        if ydl_opts:
            opts.update(ydl_opts)
        self.ydl_opts = opts

    def _extract(self, url: str) -> Dict[str, Any]:
        with yt_dlp.YoutubeDL(self.ydl_opts) as ydl:
            info = ydl.extract_info(url, download=False)
        if not isinstance(info, dict):
            raise SourceResolutionError("extractor returned no info")
        return info

    async def resolve(self, url: str) -> ResolvedSource:
        source = str(url or "").strip()
        if not source:
            raise SourceResolutionError("source url is empty")
        try:
            info = await asyncio.wait_for(asyncio.to_thread(self._extract, source), timeout=self.timeout_sec)
        except asyncio.TimeoutError as e:
            raise SourceResolutionError(f"resolution timed out after {self.timeout_sec:.0f}s") from e
        except SourceResolutionError:
            raise
        except Exception as e:
            raise SourceResolutionError(f"resolution failed: {e}") from e

        stream_url = str(info.get("url") or "").strip()
        if not stream_url:
            formats = info.get("formats") or []
            for fmt in reversed(formats):
                if isinstance(fmt, dict) and fmt.get("url"):
                    stream_url = str(fmt["url"])
                    break
        if not stream_url:
            raise SourceResolutionError("no playable url in extractor info")
        title = str(info.get("title") or info.get("fulltitle") or "").strip() or source
        return ResolvedSource(stream_url=stream_url, title=title)


class FfmpegDecoder:
    """
    Decode a media URL to raw mono s16le PCM on the subprocess stdout.
    """

    def __init__(
        self,
        ffmpeg_bin: str = "ffmpeg",
        sample_rate: int = 16000,
        channels: int = 1,
        realtime: bool = True,
        chunk_bytes: int = 4096,
    ) -> None:
        self.ffmpeg_bin = str(ffmpeg_bin or "ffmpeg")
        self.sample_rate = max(1, int(sample_rate))
        self.channels = max(1, int(channels))
        self.realtime = bool(realtime)
        self.chunk_bytes = max(256, int(chunk_bytes))

    def build_command(self, stream_url: str) -> List[str]:
        cmd = [self.ffmpeg_bin, "-nostdin", "-loglevel", "error"]
        if self.realtime:
            cmd.append("-re")
        cmd += [
            "-i",
            str(stream_url),
            "-vn",
            "-f",
            "s16le",
            "-ac",
            str(self.channels),
            "-ar",
            str(self.sample_rate),
            "pipe:1",
        ]
        return cmd

    async def spawn(self, stream_url: str) -> Any:
        cmd = self.build_command(stream_url)
        logger.info("spawning decoder bin=%s realtime=%s", self.ffmpeg_bin, self.realtime)
        return await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )

    async def terminate(self, process: Any, wait_sec: float = 5.0) -> None:
        if process is None:
            return
        if getattr(process, "returncode", None) is None:
            with suppress(ProcessLookupError):
                process.kill()
        with suppress(asyncio.TimeoutError, ProcessLookupError):
            await asyncio.wait_for(process.wait(), timeout=wait_sec)
