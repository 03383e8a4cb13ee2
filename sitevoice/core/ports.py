"""
SiteVoice Core Domain Ports (Interfaces)

This module defines all ports (interfaces) of the system.
Ports are contracts that are implemented by adapters in the infrastructure layer
or supplied by the surrounding application (storage, identity, connectivity).

Principle: The domain defines WHAT needs to be done.
           Adapters define HOW to do it.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, List, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from sitevoice.core.entities import (
        CommandContext,
        ExecutionReceipt,
        Intent,
        OfflineQueueEntry,
        Principal,
        SynthesizedAudio,
        Transcript,
    )
    from sitevoice.core.quality import QualityViolation


# ============================================
# Provider Ports
# ============================================

@runtime_checkable
class TranscriptionPort(Protocol):
    """
    Port for speech-to-text.

    Implementations:
        - RemoteTranscriptionProvider (HTTP)
        - WhisperTranscriptionProvider (local fallback)
        - MockTranscriptionProvider (tests)
    """

    name: str
    is_remote: bool

    @abstractmethod
    async def transcribe(self, audio: bytes, language: str) -> "Transcript":
        """
        Convert audio to text.

        Args:
            audio: Audio data (WAV or PCM 16-bit mono)
            language: BCP-47 language tag

        Returns:
            Transcript with a confidence score

        Raises:
            ProviderError: On any provider failure
        """
        ...


@runtime_checkable
class IntentPort(Protocol):
    """
    Port for natural language understanding.

    Implementations:
        - RemoteIntentProvider (HTTP)
        - DeterministicIntentParser (local fallback)
    """

    name: str
    is_remote: bool

    @abstractmethod
    async def parse(self, text: str, context: "CommandContext") -> "Intent":
        """
        Parse a transcript into a structured intent.

        Args:
            text: Transcript text
            context: Run context (language, active entity hints)

        Returns:
            Intent with confidence and, when unsure, a clarification prompt
        """
        ...


@runtime_checkable
class SynthesisPort(Protocol):
    """Port for text-to-speech."""

    name: str
    is_remote: bool

    @abstractmethod
    async def synthesize(self, text: str, language: str) -> "SynthesizedAudio":
        """Convert confirmation or error text to audio."""
        ...


# ============================================
# Collaborator Ports
# ============================================

@runtime_checkable
class StoragePort(Protocol):
    """
    Port for the record storage collaborator.

    Must be idempotent-safe: a replay with the same idempotency key must not
    apply the write twice (see IdempotentStorage).
    """

    @abstractmethod
    async def execute(
        self,
        intent: "Intent",
        context: "CommandContext",
        idempotency_key: str,
    ) -> "ExecutionReceipt":
        """
        Apply the intent to the business records.

        Raises:
            NetworkUnavailable: No connectivity; the write should be queued
            StorageExecutionFailed: Business-rule rejection
        """
        ...


@runtime_checkable
class IdentityPort(Protocol):
    """Port for the identity collaborator."""

    @abstractmethod
    async def current_principal(self, context: "CommandContext") -> "Principal":
        """
        Resolve the authenticated principal and tenant scope.

        Raises:
            IdentityError: If the principal cannot be resolved
        """
        ...


@runtime_checkable
class ConnectivityPort(Protocol):
    """Port for the connectivity collaborator, polled before remote calls."""

    @abstractmethod
    def is_network_available(self) -> bool:
        ...


@runtime_checkable
class AlertPort(Protocol):
    """Port for the external alerting collaborator."""

    @abstractmethod
    def emit(self, violation: "QualityViolation") -> None:
        ...


@runtime_checkable
class OfflineQueuePort(Protocol):
    """
    Port for the durable per-tenant FIFO of deferred writes.

    Implementations:
        - SQLiteOfflineQueue
    """

    @abstractmethod
    def enqueue(self, entry: "OfflineQueueEntry") -> "OfflineQueueEntry":
        """Append an entry; returns it with its sequence number."""
        ...

    @abstractmethod
    def peek(self, tenant_id: str) -> Optional["OfflineQueueEntry"]:
        """Oldest pending entry of a tenant."""
        ...

    @abstractmethod
    def pending(self, tenant_id: str, limit: int = 100) -> List["OfflineQueueEntry"]:
        ...

    @abstractmethod
    def pending_count(self, tenant_id: str) -> int:
        ...

    @abstractmethod
    def tenants_with_pending(self) -> List[str]:
        ...

    @abstractmethod
    def acknowledge(self, entry_id: str) -> bool:
        """Remove an entry after storage acknowledged the write."""
        ...

    @abstractmethod
    def record_failure(self, entry_id: str, error: str) -> int:
        """Increment the retry count; returns the new count."""
        ...

    @abstractmethod
    def move_to_dead_letter(self, entry_id: str, error: str) -> bool:
        ...
