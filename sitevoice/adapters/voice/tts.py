"""
SiteVoice TTS (Text-to-Speech) Providers

- RemoteSynthesisProvider: JSON-over-HTTP synthesis service
- PiperSynthesisProvider: offline neural voices (local fallback)
- Pyttsx3SynthesisProvider: system voices (local fallback when Piper is absent)
- SilentSynthesisProvider: no audio; callers fall back to the text

Providers return WAV bytes; playback belongs to the caller.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import os
import tempfile
import threading
import wave
from pathlib import Path
from typing import Optional, Tuple

import httpx
import numpy as np

try:
    import pyttsx3
    PYTTSX3_AVAILABLE = True
except ImportError:
    PYTTSX3_AVAILABLE = False

try:
    from piper import PiperVoice
    from piper.config import SynthesisConfig
    PIPER_AVAILABLE = True
except ImportError:
    PIPER_AVAILABLE = False

from sitevoice.adapters.voice.http import HTTPProviderClient
from sitevoice.core.entities import SynthesizedAudio
from sitevoice.core.errors import InvalidProviderResponse, ProviderError

logger = logging.getLogger(__name__)


def pcm_to_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Wraps int16 mono samples in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(np.asarray(samples, dtype=np.int16).tobytes())
    return buffer.getvalue()


class RemoteSynthesisProvider:
    """
    Remote synthesis service.

    Request: POST {path} {"text", "language", "voice"}
    Response: {"audio": base64 str, "content_type": str}
    """

    is_remote = True

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        name: str = "remote-tts",
        path: str = "/v1/synthesize",
        voice: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[HTTPProviderClient] = None,
    ) -> None:
        self.name = name
        self.path = path
        self.voice = voice
        self._http = client or HTTPProviderClient(base_url, name, api_key=api_key, timeout=timeout)

    async def synthesize(self, text: str, language: str) -> SynthesizedAudio:
        data = await self._http.post_json(
            self.path,
            json={"text": text, "language": language, "voice": self.voice},
        )
        encoded = data.get("audio")
        if not isinstance(encoded, str):
            raise InvalidProviderResponse(f"{self.name}: missing audio", self.name)
        try:
            audio = base64.b64decode(encoded, validate=True)
        except ValueError as e:
            raise InvalidProviderResponse(f"{self.name}: audio is not base64", self.name) from e
        return SynthesizedAudio(
            audio=audio,
            text=text,
            content_type=data.get("content_type", "audio/wav"),
            provider=self.name,
        )

    async def close(self) -> None:
        await self._http.close()


PIPER_VOICE_BASE_URL = "https://huggingface.co/rhasspy/piper-voices/resolve/main"

# Voice name -> (language family, speaker, quality)
PIPER_VOICES = {
    "en_US-amy-medium": ("en", "amy", "medium"),
    "en_US-ryan-medium": ("en", "ryan", "medium"),
    "es_MX-claude-high": ("es", "claude", "high"),
}


def piper_voice_files(voice: str, models_dir: Path) -> Tuple[Path, Path]:
    """
    Local .onnx model and .onnx.json config of a Piper voice, fetched on first use.

    Raises:
        ValueError: Unknown voice name
        RuntimeError: The download failed
    """
    try:
        family, speaker, quality = PIPER_VOICES[voice]
    except KeyError:
        raise ValueError(f"Unknown Piper voice {voice!r}; known: {', '.join(PIPER_VOICES)}") from None

    locale = voice.split("-", 1)[0]
    remote_dir = f"{PIPER_VOICE_BASE_URL}/{family}/{locale}/{speaker}/{quality}"
    models_dir.mkdir(parents=True, exist_ok=True)

    files = []
    for suffix in (".onnx", ".onnx.json"):
        target = models_dir / f"{voice}{suffix}"
        if not target.exists():
            _fetch(f"{remote_dir}/{voice}{suffix}", target)
        files.append(target)
    return files[0], files[1]


def _fetch(url: str, target: Path) -> None:
    partial = target.with_name(target.name + ".part")
    logger.info(f"Fetching Piper voice file {target.name}")
    try:
        with httpx.stream("GET", url, follow_redirects=True, timeout=60.0) as response:
            response.raise_for_status()
            with partial.open("wb") as out:
                for chunk in response.iter_bytes():
                    out.write(chunk)
    except httpx.HTTPError as e:
        partial.unlink(missing_ok=True)
        raise RuntimeError(f"Could not fetch {url}: {e}") from e
    partial.replace(target)


class PiperSynthesisProvider:
    """
    Offline neural voices through Piper (https://github.com/rhasspy/piper).

    Voice files are cached under models_dir and fetched on first use.
    """

    is_remote = False

    DEFAULT_VOICE = "en_US-amy-medium"

    def __init__(
        self,
        voice: str = DEFAULT_VOICE,
        models_dir: str = "models/piper",
        speed: float = 1.0,
        variability: float = 0.667,
        name: str = "piper",
    ) -> None:
        if not PIPER_AVAILABLE:
            raise RuntimeError("piper-tts is not installed. Install it with: pip install piper-tts")

        self.name = name
        self.voice_name = voice
        model_path, config_path = piper_voice_files(voice, Path(models_dir))
        self._engine = PiperVoice.load(str(model_path), config_path=str(config_path))
        self._options = SynthesisConfig(length_scale=1.0 / speed, noise_scale=variability)
        logger.info(f"Piper voice {voice} ready ({self._engine.config.sample_rate} Hz)")

    async def synthesize(self, text: str, language: str) -> SynthesizedAudio:
        return await asyncio.to_thread(self._render, text)

    def _render(self, text: str) -> SynthesizedAudio:
        if not text.strip():
            return SynthesizedAudio(audio=b"", text=text, provider=self.name)
        try:
            pcm = [c.audio_int16_array for c in self._engine.synthesize(text, syn_config=self._options)]
        except Exception as e:
            raise ProviderError(f"Piper synthesis failed: {e}", self.name) from e
        audio = pcm_to_wav(np.concatenate(pcm), self._engine.config.sample_rate) if pcm else b""
        return SynthesizedAudio(audio=audio, text=text, provider=self.name)


class Pyttsx3SynthesisProvider:
    """
    System voices through pyttsx3 (SAPI5, NSSpeechSynthesizer, eSpeak).

    pyttsx3 engines are not thread-safe, so calls are serialized.
    """

    is_remote = False

    def __init__(self, rate: int = 175, volume: float = 1.0, name: str = "pyttsx3") -> None:
        """
        Raises:
            RuntimeError: If pyttsx3 is not available
        """
        if not PYTTSX3_AVAILABLE:
            raise RuntimeError(
                "pyttsx3 is not installed. Install it with: pip install pyttsx3"
            )
        self.name = name
        self.engine = pyttsx3.init()
        self.engine.setProperty("rate", rate)
        self.engine.setProperty("volume", volume)
        self._lock = threading.Lock()
        logger.info(f"pyttsx3 TTS initialized: rate={rate}, volume={volume}")

    async def synthesize(self, text: str, language: str) -> SynthesizedAudio:
        return await asyncio.to_thread(self._synthesize_sync, text)

    def _synthesize_sync(self, text: str) -> SynthesizedAudio:
        if not text.strip():
            return SynthesizedAudio(audio=b"", text=text, provider=self.name)

        fd, path = tempfile.mkstemp(suffix=".wav")
        os.close(fd)
        try:
            with self._lock:
                self.engine.save_to_file(text, path)
                self.engine.runAndWait()
            audio = Path(path).read_bytes()
        except Exception as e:
            raise ProviderError(f"pyttsx3 synthesis failed: {e}", self.name) from e
        finally:
            Path(path).unlink(missing_ok=True)
        return SynthesizedAudio(audio=audio, text=text, provider=self.name)


class SilentSynthesisProvider:
    """
    Synthesis provider without audio.

    Used when no voice is installed or for testing; the run still carries the
    message text.
    """

    is_remote = False

    def __init__(self, name: str = "silent") -> None:
        self.name = name
        self.calls: list = []

    async def synthesize(self, text: str, language: str) -> SynthesizedAudio:
        self.calls.append(text)
        logger.debug(f"[Silent TTS] {text}")
        return SynthesizedAudio(audio=b"", text=text, provider=self.name)


def create_local_synthesizer(voice: str = PiperSynthesisProvider.DEFAULT_VOICE):
    """
    Best available local synthesizer: Piper, then pyttsx3, then silent.
    """
    if PIPER_AVAILABLE:
        try:
            return PiperSynthesisProvider(voice=voice)
        except (RuntimeError, ValueError) as e:
            logger.warning(f"Piper unavailable: {e}")
    if PYTTSX3_AVAILABLE:
        try:
            return Pyttsx3SynthesisProvider()
        except (RuntimeError, OSError) as e:
            logger.warning(f"pyttsx3 unavailable: {e}")
    logger.info("No local voice installed, confirmations will be text only")
    return SilentSynthesisProvider()
