# coding=utf-8
from __future__ import annotations

import io
import wave
from dataclasses import dataclass
from typing import Optional

import numpy as np


def decode_pcm16le(raw: bytes) -> np.ndarray:
    if not isinstance(raw, (bytes, bytearray)):
        raise ValueError("pcm bytes are required")
    if len(raw) % 2 != 0:
        raise ValueError("pcm16le bytes length must be even")
    if not raw:
        return np.zeros((0,), dtype=np.float32)

    pcm16 = np.frombuffer(bytes(raw), dtype="<i2").astype(np.float32)
    wav = pcm16 / 32768.0
    return np.clip(wav, -1.0, 1.0)


def pcm_rms(raw: bytes) -> float:
    samples = decode_pcm16le(raw[: len(raw) - (len(raw) % 2)])
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples))))


def pcm16le_to_wav(pcm: bytes, sample_rate: int = 16000, channels: int = 1, sample_width: int = 2) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(int(channels))
        wf.setsampwidth(int(sample_width))
        wf.setframerate(int(sample_rate))
        wf.writeframes(bytes(pcm))
    return buf.getvalue()


@dataclass(frozen=True)
class AudioSegment:
    index: int
    pcm: bytes
    wav: bytes
    duration_sec: float
    rms: float


class AudioSegmenter:
    """
    Accumulate raw PCM and emit one WAV-wrapped segment per filled window.

    The whole accumulator is drained on emission, so a segment is never split
    across two windows and never merged with the next one.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        sample_width: int = 2,
        segment_seconds: float = 30.0,
    ) -> None:
        self.sample_rate = max(1, int(sample_rate))
        self.channels = max(1, int(channels))
        self.sample_width = max(1, int(sample_width))
        self.segment_seconds = max(0.001, float(segment_seconds))
        frame_bytes = self.channels * self.sample_width
        raw_size = int(self.sample_rate * frame_bytes * self.segment_seconds)
        self.segment_size_bytes = max(frame_bytes, raw_size - (raw_size % frame_bytes))
        self._buffer = bytearray()
        self._next_index = 0

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.channels * self.sample_width

    def feed(self, chunk: bytes) -> Optional[AudioSegment]:
        if chunk:
            self._buffer.extend(chunk)
        if len(self._buffer) < self.segment_size_bytes:
            return None

        pcm = bytes(self._buffer)
        self._buffer = bytearray()
        segment = AudioSegment(
            index=self._next_index,
            pcm=pcm,
            wav=pcm16le_to_wav(pcm, self.sample_rate, self.channels, self.sample_width),
            duration_sec=len(pcm) / float(self.bytes_per_second),
            rms=pcm_rms(pcm) if self.sample_width == 2 else 0.0,
        )
        self._next_index += 1
        return segment

    def reset(self) -> None:
        self._buffer = bytearray()
