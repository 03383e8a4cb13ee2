"""
SiteVoice ASR (Automatic Speech Recognition) Providers

- RemoteTranscriptionProvider: JSON-over-HTTP recognition service
- WhisperTranscriptionProvider: local fallback on Faster-Whisper, works offline
- MockTranscriptionProvider: preset transcripts for tests

Usage:
```
    asr = WhisperTranscriptionProvider(model_size="base")
    transcript = await asr.transcribe(wav_bytes, "en-US")
```
"""

from __future__ import annotations

import asyncio
import io
import logging
import math
import wave
from typing import List, Literal, Optional, Tuple

import numpy as np

try:
    from faster_whisper import WhisperModel
    WHISPER_AVAILABLE = True
except ImportError:
    WHISPER_AVAILABLE = False

from sitevoice.adapters.voice.http import HTTPProviderClient
from sitevoice.core.entities import Transcript
from sitevoice.core.errors import InvalidProviderResponse, ProviderError

logger = logging.getLogger(__name__)


# Types of model sizes
ModelSize = Literal["tiny", "base", "small", "medium", "large-v2", "large-v3"]


def normalize_language(language: str) -> Optional[str]:
    """
    BCP-47 tag to the two-letter code local recognizers expect.

    "en-US" -> "en", "uk_UA" -> "uk", "" -> None (auto-detect)
    """
    if not language:
        return None
    return language.replace("_", "-").split("-")[0].lower() or None


def decode_audio(audio: bytes, expected_rate: int = 16000) -> Tuple[np.ndarray, int]:
    """
    Converts WAV or raw PCM 16-bit mono audio to a float32 array in [-1.0, 1.0].

    Returns:
        (samples, sample_rate)
    """
    sample_rate = expected_rate
    pcm = audio
    if audio[:4] == b"RIFF":
        with wave.open(io.BytesIO(audio), "rb") as wav:
            if wav.getsampwidth() != 2:
                raise ProviderError("Only 16-bit PCM audio is supported", "whisper")
            sample_rate = wav.getframerate()
            channels = wav.getnchannels()
            pcm = wav.readframes(wav.getnframes())
        samples = np.frombuffer(pcm, dtype=np.int16)
        if channels > 1:
            samples = samples.reshape(-1, channels).mean(axis=1)
    else:
        if len(pcm) % 2:
            pcm = pcm[:-1]
        samples = np.frombuffer(pcm, dtype=np.int16)
    return samples.astype(np.float32) / 32768.0, sample_rate


class RemoteTranscriptionProvider:
    """
    Remote recognition service.

    Request: POST {path}?language=<tag> with the raw audio as body.
    Response: {"text": str, "confidence": float, "language": str}
    """

    is_remote = True

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        name: str = "remote-asr",
        path: str = "/v1/transcribe",
        timeout: float = 5.0,
        client: Optional[HTTPProviderClient] = None,
    ) -> None:
        self.name = name
        self.path = path
        self._http = client or HTTPProviderClient(base_url, name, api_key=api_key, timeout=timeout)

    async def transcribe(self, audio: bytes, language: str) -> Transcript:
        data = await self._http.post_json(
            self.path,
            content=audio,
            params={"language": language},
            headers={"Content-Type": "application/octet-stream"},
        )
        text = data.get("text")
        confidence = data.get("confidence")
        if not isinstance(text, str) or not isinstance(confidence, (int, float)):
            raise InvalidProviderResponse(f"{self.name}: missing text or confidence", self.name)
        return Transcript(
            text=text.strip(),
            confidence=min(1.0, max(0.0, float(confidence))),
            language=data.get("language") or language,
            provider=self.name,
            is_final=bool(data.get("final", True)),
        )

    async def close(self) -> None:
        await self._http.close()


class WhisperTranscriptionProvider:
    """
    Local fallback based on Faster-Whisper.

    Benefits:
        - Fully offline
        - Multilanguage
        - Optimized speed (CTranslate2)

    Confidence is the duration-weighted mean of exp(avg_logprob) over
    segments, reduced by the no-speech probability.
    """

    is_remote = False

    DEFAULT_SAMPLE_RATE = 16000
    DEFAULT_MODEL_SIZE: ModelSize = "base"
    MIN_AUDIO_SECONDS = 0.3

    def __init__(
        self,
        model_size: ModelSize = DEFAULT_MODEL_SIZE,
        device: str = "cpu",
        compute_type: str = "auto",
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        name: str = "whisper",
    ) -> None:
        """
        Initialize Faster-Whisper provider.

        Raises:
            RuntimeError: If faster-whisper is not available
        """
        if not WHISPER_AVAILABLE:
            raise RuntimeError(
                "faster-whisper is not installed. Install it with: pip install faster-whisper"
            )

        self.name = name
        self.model_size = model_size
        self.sample_rate = sample_rate

        # On CPU use int8 for speed
        if compute_type == "auto":
            compute_type = "int8" if device == "cpu" else "float16"

        logger.info(f"Loading Whisper model: {model_size} (device={device}, compute={compute_type})")
        self.model = WhisperModel(model_size, device=device, compute_type=compute_type)

    async def transcribe(self, audio: bytes, language: str) -> Transcript:
        return await asyncio.to_thread(self._transcribe_sync, audio, language)

    def _transcribe_sync(self, audio: bytes, language: str) -> Transcript:
        samples, rate = decode_audio(audio, self.sample_rate)
        if rate != self.sample_rate:
            raise ProviderError(
                f"Expected {self.sample_rate} Hz audio, got {rate} Hz", self.name
            )

        if len(samples) < self.sample_rate * self.MIN_AUDIO_SECONDS:
            logger.debug("Audio is too short for recognition")
            return Transcript(text="", confidence=0.0, language=language, provider=self.name)

        try:
            segments, info = self.model.transcribe(
                samples,
                language=normalize_language(language),
                beam_size=5,
                temperature=0.0,
                condition_on_previous_text=False,
                vad_filter=False,
            )
            # segments is a generator; the work happens here
            segments = list(segments)
        except Exception as e:
            raise ProviderError(f"Whisper recognition failed: {e}", self.name) from e

        text = " ".join(s.text.strip() for s in segments).strip()
        confidence = self._confidence(segments)
        detected = getattr(info, "language", None) or normalize_language(language) or ""
        logger.info(f"Whisper result: '{text}' (lang={detected}, confidence={confidence:.2f})")
        return Transcript(text=text, confidence=confidence, language=language, provider=self.name)

    @staticmethod
    def _confidence(segments: List) -> float:
        if not segments:
            return 0.0
        weights = []
        scores = []
        for segment in segments:
            duration = max(float(segment.end) - float(segment.start), 0.01)
            score = math.exp(float(segment.avg_logprob)) * (1.0 - float(segment.no_speech_prob))
            weights.append(duration)
            scores.append(score)
        return float(min(1.0, max(0.0, np.average(scores, weights=weights))))

    @staticmethod
    def list_available_models() -> List[str]:
        return ["tiny", "base", "small", "medium", "large-v2", "large-v3"]


class MockTranscriptionProvider:
    """
    Mock provider for tests.

    Returns a preset transcript, optionally after a delay or by raising a
    preset error. Every call is recorded.
    """

    def __init__(
        self,
        text: str = "",
        confidence: float = 0.95,
        name: str = "mock-asr",
        is_remote: bool = True,
        delay: float = 0.0,
        error: Optional[BaseException] = None,
    ) -> None:
        self.name = name
        self.is_remote = is_remote
        self.text = text
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.calls: List[Tuple[bytes, str]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def transcribe(self, audio: bytes, language: str) -> Transcript:
        self.calls.append((audio, language))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Transcript(
            text=self.text,
            confidence=self.confidence,
            language=language,
            provider=self.name,
        )
