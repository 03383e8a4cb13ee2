"""
Default collaborators for the CLI and local development.

The real storage, identity and alerting services belong to the surrounding
application; these stand-ins satisfy the same ports:

- SocketConnectivity: TCP probe with a short cache
- StaticConnectivity: fixed answer (--offline)
- StaticIdentity: trusts the principal and tenant given on the command line
- DryRunStorage: keeps executed intents in memory
- LoggingAlertSink: writes quality violations to the log
"""

from __future__ import annotations

import itertools
import logging
import socket
import threading
import time
from typing import List, Optional, Set, Tuple

from sitevoice.core.entities import CommandContext, ExecutionReceipt, Intent, Principal
from sitevoice.core.errors import IdentityError, NetworkUnavailable
from sitevoice.core.quality import QualityViolation

logger = logging.getLogger(__name__)


class SocketConnectivity:
    """Reports the network as available when a TCP connection succeeds."""

    def __init__(
        self,
        host: str = "1.1.1.1",
        port: int = 53,
        timeout: float = 1.5,
        cache_seconds: float = 5.0,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self._lock = threading.Lock()
        self._checked_at: Optional[float] = None
        self._available = False

    def is_network_available(self) -> bool:
        with self._lock:
            now = time.monotonic()
            if self._checked_at is not None and now - self._checked_at < self.cache_seconds:
                return self._available
            try:
                with socket.create_connection((self.host, self.port), timeout=self.timeout):
                    self._available = True
            except OSError:
                self._available = False
            self._checked_at = now
            logger.debug(f"Connectivity probe {self.host}:{self.port} -> {self._available}")
            return self._available


class StaticConnectivity:
    def __init__(self, available: bool = True) -> None:
        self.available = available

    def is_network_available(self) -> bool:
        return self.available


class StaticIdentity:
    """Resolves the principal from the context itself."""

    def __init__(self, default_principal: str = "local-user", roles: Tuple[str, ...] = ("field",)) -> None:
        self.default_principal = default_principal
        self.roles = roles

    async def current_principal(self, context: CommandContext) -> Principal:
        if not context.tenant_id:
            raise IdentityError("No tenant selected")
        return Principal(
            principal_id=context.principal_id or self.default_principal,
            tenant_id=context.tenant_id,
            roles=self.roles,
        )


class DryRunStorage:
    """
    In-memory storage collaborator.

    Attributes:
        executed: (intent, context, idempotency_key) of every applied write
        confirm_actions: Actions whose writes are provisional until the user confirms
        offline: When True every call raises NetworkUnavailable
    """

    def __init__(self, confirm_actions: Optional[Set[str]] = None, offline: bool = False) -> None:
        self.confirm_actions = confirm_actions or set()
        self.offline = offline
        self.executed: List[Tuple[Intent, CommandContext, str]] = []
        self._ids = itertools.count(1)

    async def execute(self, intent: Intent, context: CommandContext, idempotency_key: str) -> ExecutionReceipt:
        if self.offline:
            raise NetworkUnavailable("Storage is offline")
        self.executed.append((intent, context, idempotency_key))
        record_id = f"dry-{next(self._ids)}"
        details = ", ".join(f"{name} {value}" for name, value in intent.entities.items())
        action = intent.action.replace("_", " ")
        confirmation = f"Saved {action}: {details}." if details else f"Saved {action}."
        logger.info(f"[dry run] {intent.action} {intent.entities} -> {record_id}")
        return ExecutionReceipt(
            record_id=record_id,
            confirmation=confirmation,
            requires_confirmation=intent.action in self.confirm_actions,
        )


class LoggingAlertSink:
    """Alert collaborator that logs violations and keeps them for inspection."""

    def __init__(self) -> None:
        self.violations: List[QualityViolation] = []

    def emit(self, violation: QualityViolation) -> None:
        self.violations.append(violation)
        logger.warning(f"Quality alert [{violation.metric}]: {violation.message}")
