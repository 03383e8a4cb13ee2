"""
SiteVoice Run Events

Events emitted on the per-run stream returned by CommandPipeline.run().
The stream always ends with exactly one Completed event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sitevoice.core.entities import (
    CommandRun,
    RunOutcome,
    RunStage,
    SynthesizedAudio,
    utcnow,
)


@dataclass(frozen=True)
class CommandRunEvent:
    run_id: str
    emitted_at: datetime = field(default_factory=utcnow, compare=False)

    @property
    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class StageChanged(CommandRunEvent):
    from_stage: RunStage = RunStage.IDLE
    to_stage: RunStage = RunStage.IDLE


@dataclass(frozen=True)
class TranscriptAvailable(CommandRunEvent):
    text: str = ""
    confidence: float = 0.0
    final: bool = True


@dataclass(frozen=True)
class ClarificationRequested(CommandRunEvent):
    text: str = ""
    audio_ref: Optional[SynthesizedAudio] = None


@dataclass(frozen=True)
class Completed(CommandRunEvent):
    outcome: RunOutcome = RunOutcome.FAILED
    message: str = ""
    confirmation_audio_ref: Optional[SynthesizedAudio] = None
    retry_after: Optional[float] = None
    run: Optional[CommandRun] = field(default=None, compare=False)

    @property
    def is_terminal(self) -> bool:
        return True
