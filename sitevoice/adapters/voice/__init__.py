"""
SiteVoice Voice Adapters Package

Adapters for voice processing:
- ASR (remote HTTP provider / Faster-Whisper fallback)
- NLU (remote HTTP provider / deterministic pattern fallback)
- TTS (remote HTTP provider / Piper / pyttsx3 fallback)
- Routing between remote providers and local fallbacks
"""

from sitevoice.adapters.voice.asr import (
    MockTranscriptionProvider,
    RemoteTranscriptionProvider,
    WhisperTranscriptionProvider,
)
from sitevoice.adapters.voice.nlu import DeterministicIntentParser, MockIntentProvider, RemoteIntentProvider
from sitevoice.adapters.voice.routing import IntentAdapter, SynthesisAdapter, TranscriptionAdapter
from sitevoice.adapters.voice.tts import (
    PiperSynthesisProvider,
    Pyttsx3SynthesisProvider,
    RemoteSynthesisProvider,
    SilentSynthesisProvider,
)

__all__ = [
    # ASR
    "RemoteTranscriptionProvider",
    "WhisperTranscriptionProvider",
    "MockTranscriptionProvider",
    # NLU
    "DeterministicIntentParser",
    "RemoteIntentProvider",
    "MockIntentProvider",
    # TTS
    "RemoteSynthesisProvider",
    "PiperSynthesisProvider",
    "Pyttsx3SynthesisProvider",
    "SilentSynthesisProvider",
    # Routing
    "TranscriptionAdapter",
    "IntentAdapter",
    "SynthesisAdapter",
]
