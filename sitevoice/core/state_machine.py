"""
SiteVoice Run State Machine

Finite state machine for one CommandRun. Ensures stage transitions happen in
order and that a run reaches exactly one terminal outcome.

State diagram:

     ------   start    -----------   audio    --------------
    | IDLE |--------->| LISTENING |--------->| TRANSCRIBING |
     ------            -----------            --------------
                        |  A    A                |        |
                   text |  |    | retry     low  |        | accepted
                        |  |    |                V        |
                        |  |   ---------------------------|---
                        |  |  | TRANSCRIPT_LOW_CONFIDENCE |   |
                        |  |   ---------------------------    |
                        V  | retry                            V
                     ----------------------  unclear  ----------------------
                    | INTENT_PARSING       |-------->| CLARIFICATION_NEEDED |
                     ----------------------           ----------------------
                        | accepted
                        V
                     -----------  executed  --------------
                    | EXECUTING |--------->| SYNTHESIZING |
                     -----------            --------------
                                             |          |
                                     confirm |          | await_confirmation
                                             V          V
                                   -----------    ----------------------------
                                  | CONFIRMED |  | AWAITING_USER_CONFIRMATION |
                                   -----------    ----------------------------
                                             \\        /
                                              complete
                                                 V
                                            ----------
                                           | TERMINAL |
                                            ----------

Any non-terminal stage may also terminate directly (timed_out, cancelled,
rate_limited, failed and the gate outcomes).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from sitevoice.core.entities import (
    CommandRun,
    RunOutcome,
    RunStage,
    SynthesizedAudio,
)
from sitevoice.core.errors import ErrorKind

logger = logging.getLogger(__name__)


class StageTransition(Enum):
    """Allowed transitions between stages."""
    START = "start"                              # IDLE -> LISTENING
    AUDIO_RECEIVED = "audio_received"            # LISTENING -> TRANSCRIBING
    TEXT_RECEIVED = "text_received"              # LISTENING -> INTENT_PARSING
    TRANSCRIPT_REJECTED = "transcript_rejected"  # TRANSCRIBING -> TRANSCRIPT_LOW_CONFIDENCE
    TRANSCRIPT_ACCEPTED = "transcript_accepted"  # TRANSCRIBING -> INTENT_PARSING
    INTENT_UNCLEAR = "intent_unclear"            # INTENT_PARSING -> CLARIFICATION_NEEDED
    INTENT_ACCEPTED = "intent_accepted"          # INTENT_PARSING -> EXECUTING
    EXECUTED = "executed"                        # EXECUTING -> SYNTHESIZING
    CONFIRM = "confirm"                          # SYNTHESIZING -> CONFIRMED
    AWAIT_CONFIRMATION = "await_confirmation"    # SYNTHESIZING -> AWAITING_USER_CONFIRMATION
    RETRY = "retry"                              # gate stages -> LISTENING
    COMPLETE = "complete"                        # CONFIRMED/AWAITING -> TERMINAL
    TERMINATE = "terminate"                      # Any -> TERMINAL


# Matrix of allowed transitions: (current_stage, transition) -> next_stage
TRANSITION_TABLE: Dict[tuple[RunStage, StageTransition], RunStage] = {
    (RunStage.IDLE, StageTransition.START): RunStage.LISTENING,

    (RunStage.LISTENING, StageTransition.AUDIO_RECEIVED): RunStage.TRANSCRIBING,
    (RunStage.LISTENING, StageTransition.TEXT_RECEIVED): RunStage.INTENT_PARSING,

    (RunStage.TRANSCRIBING, StageTransition.TRANSCRIPT_REJECTED): RunStage.TRANSCRIPT_LOW_CONFIDENCE,
    (RunStage.TRANSCRIBING, StageTransition.TRANSCRIPT_ACCEPTED): RunStage.INTENT_PARSING,

    (RunStage.INTENT_PARSING, StageTransition.INTENT_UNCLEAR): RunStage.CLARIFICATION_NEEDED,
    (RunStage.INTENT_PARSING, StageTransition.INTENT_ACCEPTED): RunStage.EXECUTING,

    (RunStage.TRANSCRIPT_LOW_CONFIDENCE, StageTransition.RETRY): RunStage.LISTENING,
    (RunStage.CLARIFICATION_NEEDED, StageTransition.RETRY): RunStage.LISTENING,

    (RunStage.EXECUTING, StageTransition.EXECUTED): RunStage.SYNTHESIZING,

    (RunStage.SYNTHESIZING, StageTransition.CONFIRM): RunStage.CONFIRMED,
    (RunStage.SYNTHESIZING, StageTransition.AWAIT_CONFIRMATION): RunStage.AWAITING_USER_CONFIRMATION,

    (RunStage.CONFIRMED, StageTransition.COMPLETE): RunStage.TERMINAL,
    (RunStage.AWAITING_USER_CONFIRMATION, StageTransition.COMPLETE): RunStage.TERMINAL,
}

# Every non-terminal stage can terminate (timeout, cancel, rate limit, failure)
for _stage in RunStage:
    if _stage is not RunStage.TERMINAL:
        TRANSITION_TABLE[(_stage, StageTransition.TERMINATE)] = RunStage.TERMINAL


# Type for callback functions on stage change
StageChangeCallback = Callable[[RunStage, RunStage, CommandRun], None]


class InvalidTransitionError(Exception):
    """Exception for invalid transitions."""
    pass


class RunStateMachine:
    """
    State machine driving a single CommandRun.

    Example usage:
        sm = RunStateMachine(run)
        sm.on_stage_change(lambda old, new, run: print(f"{old} -> {new}"))

        sm.transition(StageTransition.START)
        sm.transition(StageTransition.TEXT_RECEIVED)
        # Now in INTENT_PARSING
    """

    def __init__(self, run: CommandRun) -> None:
        self._run = run
        self._callbacks: List[StageChangeCallback] = []
        self._transition_history: List[Dict[str, Any]] = []

    @property
    def run(self) -> CommandRun:
        return self._run

    @property
    def stage(self) -> RunStage:
        """Current stage."""
        return self._run.stage

    @property
    def is_terminal(self) -> bool:
        return self._run.stage == RunStage.TERMINAL

    def get_allowed_transitions(self) -> Set[StageTransition]:
        """Returns a set of allowed transitions from the current stage."""
        return {
            transition
            for (stage, transition) in TRANSITION_TABLE
            if stage == self._run.stage
        }

    def can_transition(self, transition: StageTransition) -> bool:
        return (self._run.stage, transition) in TRANSITION_TABLE

    def transition(self, transition: StageTransition) -> RunStage:
        """
        Performs a non-terminal transition.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if transition in (StageTransition.TERMINATE, StageTransition.COMPLETE):
            raise InvalidTransitionError(
                f"Use terminate() to finish run {self._run.run_id}"
            )
        new_stage = self._lookup(transition)
        old_stage = self._run.stage
        self._run.enter_stage(new_stage)
        self._after_transition(old_stage, new_stage, transition)
        return new_stage

    def terminate(
        self,
        outcome: RunOutcome,
        message: str = "",
        error_kind: Optional[ErrorKind] = None,
        error: Optional[str] = None,
        retry_after: Optional[float] = None,
        audio: Optional[SynthesizedAudio] = None,
    ) -> None:
        """
        Moves the run to TERMINAL with its single outcome.

        CONFIRMED and AWAITING_USER_CONFIRMATION complete normally; every other
        stage terminates early.
        """
        if self._run.stage in (RunStage.CONFIRMED, RunStage.AWAITING_USER_CONFIRMATION):
            transition = StageTransition.COMPLETE
        else:
            transition = StageTransition.TERMINATE
        self._lookup(transition)

        old_stage = self._run.stage
        self._run.finish(
            outcome,
            message=message,
            error_kind=error_kind,
            error=error,
            retry_after=retry_after,
            audio=audio,
        )
        self._after_transition(old_stage, RunStage.TERMINAL, transition)

    def on_stage_change(self, callback: StageChangeCallback) -> None:
        """Registers a callback for stage change notifications."""
        self._callbacks.append(callback)

    def get_transition_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Returns the transition history."""
        return self._transition_history[-limit:]

    def _lookup(self, transition: StageTransition) -> RunStage:
        key = (self._run.stage, transition)
        if key not in TRANSITION_TABLE:
            allowed = self.get_allowed_transitions()
            raise InvalidTransitionError(
                f"Transition {transition.value} not allowed from stage {self._run.stage.name}. "
                f"Allowed: {sorted(t.value for t in allowed)}"
            )
        return TRANSITION_TABLE[key]

    def _after_transition(
        self,
        old_stage: RunStage,
        new_stage: RunStage,
        transition: StageTransition,
    ) -> None:
        self._transition_history.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "from_stage": old_stage.name,
            "to_stage": new_stage.name,
            "transition": transition.value,
            "run_id": self._run.run_id,
        })
        logger.debug(f"Run {self._run.run_id}: {old_stage.name} -> {new_stage.name} ({transition.value})")

        for callback in self._callbacks:
            try:
                callback(old_stage, new_stage, self._run)
            except Exception as e:
                # Callbacks must not affect the run
                logger.error(f"Stage callback error on run {self._run.run_id}: {e}")


# ============================================
# Utility Functions
# ============================================

def create_state_diagram_mermaid() -> str:
    """Generates a Mermaid state diagram."""
    lines = ["stateDiagram-v2"]

    for (from_stage, transition), to_stage in TRANSITION_TABLE.items():
        lines.append(f"    {from_stage.name} --> {to_stage.name}: {transition.value}")

    return "\n".join(lines)
