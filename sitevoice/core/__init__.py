"""
SiteVoice - Core Domain Package

This package contains pure domain logic without infrastructure dependencies.
All dependencies are inward-facing (towards this package).
"""

from sitevoice.core.config import ConfidenceThresholds, PipelineConfig, QualityTargets
from sitevoice.core.entities import (
    CommandContext,
    CommandInput,
    CommandRun,
    ExecutionReceipt,
    Intent,
    Modality,
    OfflineQueueEntry,
    QualitySample,
    RunOutcome,
    RunStage,
    Token,
)
from sitevoice.core.rate_limiter import RateLimitPolicy, RateLimiter
from sitevoice.core.state_machine import RunStateMachine, StageTransition

__all__ = [
    # Entities
    "CommandInput",
    "CommandContext",
    "CommandRun",
    "ExecutionReceipt",
    "Intent",
    "Modality",
    "OfflineQueueEntry",
    "QualitySample",
    "RunOutcome",
    "RunStage",
    "Token",
    # Configuration
    "ConfidenceThresholds",
    "PipelineConfig",
    "QualityTargets",
    # Rate limiting
    "RateLimitPolicy",
    "RateLimiter",
    # State Machine
    "RunStateMachine",
    "StageTransition",
]
