# coding=utf-8

from .history import SessionHistory, TranscriptRecord
from .ingest import FfmpegDecoder, ResolvedSource, SourceResolutionError, SourceResolver
from .openai_api import OpenAIAPIClient, RateLimitedError, UpstreamAPIError
from .registry import ConnectionRegistry
from .segmenter import AudioSegment, AudioSegmenter, decode_pcm16le, pcm16le_to_wav
from .supervisor import BroadcastSession, StreamSupervisor, SupervisorState
from .transcription import Transcriber
from .translation import KeyRing, TranslationFan

__all__ = [
    "AudioSegment",
    "AudioSegmenter",
    "BroadcastSession",
    "ConnectionRegistry",
    "FfmpegDecoder",
    "KeyRing",
    "OpenAIAPIClient",
    "RateLimitedError",
    "ResolvedSource",
    "SessionHistory",
    "SourceResolutionError",
    "SourceResolver",
    "StreamSupervisor",
    "SupervisorState",
    "Transcriber",
    "TranscriptRecord",
    "TranslationFan",
    "UpstreamAPIError",
    "decode_pcm16le",
    "pcm16le_to_wav",
]
