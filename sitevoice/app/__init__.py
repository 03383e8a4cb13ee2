"""
SiteVoice Application Layer Package

Orchestration of command runs, offline replay and quality monitoring.
"""

from sitevoice.app.monitor import QualityMonitor
from sitevoice.app.offline import OfflineSync
from sitevoice.app.pipeline import CommandPipeline, CommandRunStream, build_pipeline

__all__ = [
    "CommandPipeline",
    "CommandRunStream",
    "build_pipeline",
    "OfflineSync",
    "QualityMonitor",
]
