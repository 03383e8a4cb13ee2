"""
Configuration utilities for SiteVoice.

Provides centralized access to configuration from environment variables.
Thresholds, deadlines and budgets live in PipelineConfig; every value can be
overridden through a SITEVOICE_* variable (or a .env file).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfidenceThresholds:
    """Confidence gates applied by the orchestrator."""
    transcription: float = 0.70
    intent: float = 0.85

    def __post_init__(self) -> None:
        for name in ("transcription", "intent"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} threshold must be between 0.0 and 1.0, got {value}")


@dataclass(frozen=True)
class QualityTargets:
    """Alerting thresholds and reporting targets for the quality monitor."""
    max_median_wer: float = 0.15
    max_p95_end_to_end_seconds: float = 12.0
    min_intent_f1: float = 0.85
    target_median_transcription_seconds: float = 3.0
    target_median_end_to_end_seconds: float = 8.0


@dataclass
class PipelineConfig:
    """Configuration for the command pipeline."""

    # Confidence gates
    thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    tenant_thresholds: Dict[str, ConfidenceThresholds] = field(default_factory=dict)

    # Deadlines (seconds)
    transcription_timeout_seconds: float = 5.0
    intent_timeout_seconds: float = 5.0
    synthesis_timeout_seconds: float = 5.0
    run_timeout_seconds: float = 12.0

    # Retries
    max_stage_retries: int = 2
    retry_delays_seconds: Tuple[float, ...] = (1.0, 2.0)
    max_user_retries: int = 2

    # Rate limits
    requests_per_minute: int = 30
    requests_per_day: int = 2000
    tenant_daily_commands: int = 5000

    # Offline queue
    offline_max_retries: int = 5

    # Local fallbacks
    fallback_intent_confidence: float = 0.75
    whisper_model_size: str = "base"
    piper_voice: str = "en_US-amy-medium"

    # Remote providers
    transcription_url: Optional[str] = None
    intent_url: Optional[str] = None
    synthesis_url: Optional[str] = None
    provider_api_key: Optional[str] = None

    # Quality monitor
    quality: QualityTargets = field(default_factory=QualityTargets)
    sample_retention_days: int = 7

    # Event stream
    event_queue_size: int = 32

    def thresholds_for(self, tenant_id: str) -> ConfidenceThresholds:
        """Returns the confidence gates for a tenant (override or default)."""
        return self.tenant_thresholds.get(tenant_id, self.thresholds)

    def retry_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        if not self.retry_delays_seconds:
            return 0.0
        index = min(attempt, len(self.retry_delays_seconds) - 1)
        return self.retry_delays_seconds[index]


def get_data_folder() -> Path:
    """
    Get the data folder path from environment or default.

    Returns:
        Path object pointing to the data folder
    """
    data_folder = os.getenv("SITEVOICE_DATA_FOLDER", "data")
    path = Path(data_folder)

    # Create folder if it doesn't exist
    path.mkdir(parents=True, exist_ok=True)

    return path


def get_offline_db_path() -> Path:
    """
    Get the offline queue database path.

    Returns:
        Path object pointing to offline.db
    """
    return get_data_folder() / "offline.db"


def get_provider_api_key() -> Optional[str]:
    """Get the remote provider API key from environment."""
    return os.getenv("SITEVOICE_PROVIDER_API_KEY")


def parse_tenant_thresholds(raw: str) -> Dict[str, ConfidenceThresholds]:
    """
    Parse per-tenant overrides.

    Format: "tenant:transcription:intent" entries separated by commas, e.g.
    "acme:0.6:0.8,noisy-site:0.55:0.8".
    """
    overrides: Dict[str, ConfidenceThresholds] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        parts = chunk.split(":")
        if len(parts) != 3:
            raise ValueError(f"Invalid tenant threshold entry '{chunk}'")
        tenant, transcription, intent = parts
        overrides[tenant.strip()] = ConfidenceThresholds(
            transcription=float(transcription),
            intent=float(intent),
        )
    return overrides


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def load_pipeline_config() -> PipelineConfig:
    """
    Build a PipelineConfig from SITEVOICE_* environment variables.

    Unset variables keep the dataclass defaults.
    """
    defaults = PipelineConfig()
    thresholds = ConfidenceThresholds(
        transcription=_env_float("SITEVOICE_TRANSCRIPTION_THRESHOLD", defaults.thresholds.transcription),
        intent=_env_float("SITEVOICE_INTENT_THRESHOLD", defaults.thresholds.intent),
    )

    tenant_thresholds: Dict[str, ConfidenceThresholds] = {}
    raw_overrides = os.getenv("SITEVOICE_TENANT_THRESHOLDS")
    if raw_overrides:
        tenant_thresholds = parse_tenant_thresholds(raw_overrides)
        logger.info(f"Loaded threshold overrides for {len(tenant_thresholds)} tenant(s)")

    return PipelineConfig(
        thresholds=thresholds,
        tenant_thresholds=tenant_thresholds,
        transcription_timeout_seconds=_env_float(
            "SITEVOICE_TRANSCRIPTION_TIMEOUT", defaults.transcription_timeout_seconds
        ),
        intent_timeout_seconds=_env_float("SITEVOICE_INTENT_TIMEOUT", defaults.intent_timeout_seconds),
        synthesis_timeout_seconds=_env_float("SITEVOICE_SYNTHESIS_TIMEOUT", defaults.synthesis_timeout_seconds),
        run_timeout_seconds=_env_float("SITEVOICE_RUN_TIMEOUT", defaults.run_timeout_seconds),
        max_stage_retries=_env_int("SITEVOICE_MAX_STAGE_RETRIES", defaults.max_stage_retries),
        max_user_retries=_env_int("SITEVOICE_MAX_USER_RETRIES", defaults.max_user_retries),
        requests_per_minute=_env_int("SITEVOICE_REQUESTS_PER_MINUTE", defaults.requests_per_minute),
        requests_per_day=_env_int("SITEVOICE_REQUESTS_PER_DAY", defaults.requests_per_day),
        tenant_daily_commands=_env_int("SITEVOICE_TENANT_DAILY_COMMANDS", defaults.tenant_daily_commands),
        offline_max_retries=_env_int("SITEVOICE_OFFLINE_MAX_RETRIES", defaults.offline_max_retries),
        fallback_intent_confidence=_env_float(
            "SITEVOICE_FALLBACK_INTENT_CONFIDENCE", defaults.fallback_intent_confidence
        ),
        whisper_model_size=os.getenv("SITEVOICE_WHISPER_MODEL", defaults.whisper_model_size),
        piper_voice=os.getenv("SITEVOICE_PIPER_VOICE", defaults.piper_voice),
        transcription_url=os.getenv("SITEVOICE_TRANSCRIPTION_URL"),
        intent_url=os.getenv("SITEVOICE_INTENT_URL"),
        synthesis_url=os.getenv("SITEVOICE_SYNTHESIS_URL"),
        provider_api_key=get_provider_api_key(),
        sample_retention_days=_env_int("SITEVOICE_SAMPLE_RETENTION_DAYS", defaults.sample_retention_days),
    )
