"""
SiteVoice NLU (Natural Language Understanding) Providers

- RemoteIntentProvider: JSON-over-HTTP language-understanding service
- DeterministicIntentParser: local fallback based on regular expressions
- MockIntentProvider: preset intents for tests

The deterministic parser is reliable and predictable but knows only the
phrasings listed in DEFAULT_PATTERNS, so its confidence is fixed below the
execution threshold and every parse carries a clarification prompt.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Pattern, Union

from sitevoice.adapters.voice.http import HTTPProviderClient
from sitevoice.core.entities import (
    UNKNOWN_ACTION,
    CommandContext,
    EntityValue,
    Intent,
    Token,
)
from sitevoice.core.errors import InvalidProviderResponse
from sitevoice.core.numbers import replace_number_words

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_CONFIDENCE = 0.75

UNKNOWN_CLARIFICATION = "Sorry, I didn't understand. Could you say that again?"

# Spoken job statuses -> enumerated tokens
STATUS_ALIASES: Dict[str, str] = {
    "in progress": "in_progress",
    "started": "in_progress",
    "active": "in_progress",
    "on hold": "on_hold",
    "paused": "on_hold",
    "blocked": "on_hold",
    "done": "complete",
    "finished": "complete",
    "complete": "complete",
    "completed": "complete",
    "scheduled": "scheduled",
    "cancelled": "cancelled",
    "canceled": "cancelled",
}

_AMOUNT = r"\$?(?P<amount>\d+(?:\.\d+)?)(?:\s*(?:dollars|bucks))?"


@dataclass
class NLUPattern:
    """
    Template for intent recognition.

    Attributes:
        action: Action identifier produced by this pattern
        patterns: List of regular expressions (named groups become entities)
        summary: Read-back template used in the clarification prompt
        priority: Priority (higher = checked first)
        examples: Examples of commands (for documentation/testing)
    """
    action: str
    patterns: List[str]
    summary: str = ""
    priority: int = 0
    examples: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        # Compile regular expressions
        self._compiled: List[Pattern[str]] = []
        for pattern in self.patterns:
            try:
                self._compiled.append(re.compile(pattern, re.IGNORECASE))
            except re.error as e:
                raise ValueError(f"Invalid regex pattern '{pattern}': {e}")


# ============================================
# Templates for field commands
# ============================================

DEFAULT_PATTERNS: List[NLUPattern] = [
    NLUPattern(
        action="create_cost",
        patterns=[
            rf"^(?:add|log|record|enter)\s+(?:a\s+|an\s+)?(?:cost|expense)\s+(?:of\s+)?{_AMOUNT}\s+(?:for|on)\s+(?P<description>.+)$",
            rf"^(?:spent|paid)\s+{_AMOUNT}\s+(?:for|on)\s+(?P<description>.+)$",
            rf"^(?P<description>.+?)\s+(?:cost|costs|came to)\s+{_AMOUNT}$",
        ],
        summary="add a cost of {amount} for {description}",
        priority=10,
        examples=[
            "add cost one thousand five hundred for cement",
            "spent 250 on lumber",
            "rebar cost 1,200",
        ],
    ),
    NLUPattern(
        action="log_hours",
        patterns=[
            r"^(?:log|add|record)\s+(?P<hours>\d+(?:\.\d+)?)\s+hours?(?:\s+(?:for|on|to)\s+(?P<worker>.+?))?$",
            r"^(?P<worker>.+?)\s+worked\s+(?P<hours>\d+(?:\.\d+)?)\s+hours?$",
        ],
        summary="log {hours} hours",
        priority=8,
        examples=[
            "log eight hours for Maria",
            "Tom worked 6.5 hours",
        ],
    ),
    NLUPattern(
        action="update_status",
        patterns=[
            r"^(?:mark|set)\s+(?:the\s+)?(?:job|project)(?:\s+(?!as\b|to\b)(?P<job_id>[\w-]+))?\s+(?:as\s+|to\s+)?(?P<status>in progress|on hold|[a-z]+)$",
            r"^(?:set\s+)?status\s+(?:to\s+)?(?P<status>in progress|on hold|[a-z]+)$",
        ],
        summary="mark the job as {status}",
        priority=6,
        examples=[
            "mark the job as complete",
            "set job J-42 to on hold",
            "status in progress",
        ],
    ),
    NLUPattern(
        action="add_note",
        patterns=[
            r"^(?:add|take|make)\s+(?:a\s+)?note(?:\s+that)?[:,]?\s+(?P<text>.+)$",
            r"^note[:,]?\s+(?P<text>.+)$",
        ],
        summary='add the note "{text}"',
        priority=4,
        examples=[
            "add a note the delivery is late",
            "note: inspector coming Monday",
        ],
    ),
    NLUPattern(
        action="record_payment",
        patterns=[
            rf"^(?:record|log|add)\s+(?:a\s+)?payment\s+(?:of\s+)?{_AMOUNT}\s+from\s+(?P<client>.+)$",
            rf"^(?P<client>.+?)\s+paid\s+(?:us\s+)?{_AMOUNT}$",
        ],
        summary="record a payment of {amount} from {client}",
        priority=9,
        examples=[
            "record payment of 5000 from Johnson",
            "Smith paid us two thousand",
        ],
    ),
]


def to_number(raw: str) -> Union[int, Decimal]:
    """'1500' -> 1500, '12.50' -> Decimal('12.50')."""
    raw = raw.replace(",", "")
    return Decimal(raw) if "." in raw else int(raw)


def merge_active_entities(intent: Intent, context: CommandContext) -> Intent:
    """Adds context hints (e.g. the selected job) the parser did not extract."""
    if intent.is_unknown or not context.active_entities:
        return intent
    missing = {
        name: value
        for name, value in context.active_entities.items()
        if name not in intent.entities
    }
    return intent.with_entities(missing) if missing else intent


class DeterministicIntentParser:
    """
    Deterministic intent parser used as the local fallback.

    Example:
    ```
    parser = DeterministicIntentParser()
    intent = await parser.parse("add cost one thousand five hundred for cement", context)
    # Intent(action="create_cost", entities={"amount": 1500, "description": "cement"},
    #        confidence=0.75, clarification="Did you mean to add a cost of 1500 for cement? ...")
    ```
    """

    is_remote = False

    def __init__(
        self,
        patterns: Optional[List[NLUPattern]] = None,
        confidence: float = DEFAULT_FALLBACK_CONFIDENCE,
        name: str = "deterministic-nlu",
    ) -> None:
        self.name = name
        self.confidence = confidence
        self.patterns = list(patterns or DEFAULT_PATTERNS)
        # Sort by priority (higher -> checked first)
        self.patterns.sort(key=lambda p: -p.priority)

        # Preprocessors for text normalization
        self._preprocessors: List[Callable[[str], str]] = [
            self._normalize_whitespace,
            self._expand_contractions,
            self._strip_punctuation,
            replace_number_words,
        ]

        # Postprocessors for entities
        self._entity_processors: Dict[str, Callable[[str], EntityValue]] = {
            "amount": to_number,
            "hours": to_number,
            "status": self._process_status,
            "description": self._process_text,
            "text": self._process_text,
            "worker": self._process_text,
            "client": self._process_text,
        }

    async def parse(self, text: str, context: CommandContext) -> Intent:
        return self.parse_text(text)

    def parse_text(self, text: str) -> Intent:
        """
        Parse command text into a structured intent.

        Args:
            text: Command text (after ASR)

        Returns:
            Recognized Intent, or the unknown action with a clarification
        """
        normalized = self._preprocess(text)

        for pattern_def in self.patterns:
            for compiled in pattern_def._compiled:
                match = compiled.match(normalized)
                if match:
                    entities = self._extract_entities(match)
                    if entities is None:
                        continue
                    logger.debug(f"Fallback parser matched {pattern_def.action}: {entities}")
                    return Intent(
                        action=pattern_def.action,
                        entities=entities,
                        confidence=self.confidence,
                        clarification=self._clarification(pattern_def, entities),
                        source=self.name,
                    )

        return Intent(
            action=UNKNOWN_ACTION,
            entities={},
            confidence=0.0,
            clarification=UNKNOWN_CLARIFICATION,
            source=self.name,
        )

    def _clarification(self, pattern_def: NLUPattern, entities: Dict[str, EntityValue]) -> str:
        values = {name: str(value).replace("_", " ") for name, value in entities.items()}
        try:
            summary = pattern_def.summary.format(**values)
        except KeyError:
            summary = pattern_def.action.replace("_", " ")
        return f"Did you mean to {summary}? Please confirm or say it again."

    def _preprocess(self, text: str) -> str:
        """Normalize text before parsing."""
        result = text.strip()
        for processor in self._preprocessors:
            result = processor(result)
        return result

    def _normalize_whitespace(self, text: str) -> str:
        return " ".join(text.split())

    def _expand_contractions(self, text: str) -> str:
        contractions = {
            "what's": "what is",
            "it's": "it is",
            "let's": "let us",
            "we've": "we have",
            "i've": "i have",
        }
        result = text.lower()
        for contraction, expansion in contractions.items():
            result = result.replace(contraction, expansion)
        return result

    def _strip_punctuation(self, text: str) -> str:
        # Whisper adds a trailing period
        return text.rstrip(".!?")

    def _extract_entities(self, match: re.Match) -> Optional[Dict[str, EntityValue]]:
        """Extract entities from the match object; None rejects the match."""
        entities: Dict[str, EntityValue] = {}
        for name, value in match.groupdict().items():
            if value is None:
                continue
            processor = self._entity_processors.get(name)
            processed = processor(value) if processor else value.strip()
            if processed is None or processed == "":
                return None
            entities[name] = processed
        return entities

    def _process_status(self, value: str) -> Optional[Token]:
        status = STATUS_ALIASES.get(value.strip().lower())
        return Token(status) if status else None

    def _process_text(self, value: str) -> str:
        return value.strip().strip(",;:")

    def add_pattern(self, pattern: NLUPattern) -> None:
        """Add new pattern."""
        self.patterns.append(pattern)
        self.patterns.sort(key=lambda p: -p.priority)

    def get_supported_actions(self) -> List[str]:
        return sorted({p.action for p in self.patterns})

    def get_examples(self, action: str) -> List[str]:
        """Returns example commands for the action."""
        examples = []
        for pattern in self.patterns:
            if pattern.action == action:
                examples.extend(pattern.examples)
        return examples


class RemoteIntentProvider:
    """
    Remote language-understanding service.

    Request: POST {path} {"text", "language", "active_entities"}
    Response: {"action", "entities", "confidence", "clarification"}
    """

    is_remote = True

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        name: str = "remote-nlu",
        path: str = "/v1/parse",
        timeout: float = 5.0,
        client: Optional[HTTPProviderClient] = None,
    ) -> None:
        self.name = name
        self.path = path
        self._http = client or HTTPProviderClient(base_url, name, api_key=api_key, timeout=timeout)

    async def parse(self, text: str, context: CommandContext) -> Intent:
        data = await self._http.post_json(
            self.path,
            json={
                "text": text,
                "language": context.language,
                "active_entities": dict(context.active_entities),
            },
        )
        try:
            payload = dict(data)
            payload.setdefault("source", self.name)
            return Intent.from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidProviderResponse(f"{self.name}: malformed intent ({e})", self.name) from e

    async def close(self) -> None:
        await self._http.close()


class MockIntentProvider:
    """
    Mock provider for tests.

    Returns a preset intent (or the result of a callable), optionally after a
    delay or by raising a preset error. Every call is recorded.
    """

    def __init__(
        self,
        intent: Union[Intent, Callable[[str, CommandContext], Intent], None] = None,
        name: str = "mock-nlu",
        is_remote: bool = True,
        delay: float = 0.0,
        error: Optional[BaseException] = None,
    ) -> None:
        self.name = name
        self.is_remote = is_remote
        self.intent = intent
        self.delay = delay
        self.error = error
        self.calls: List[str] = []
        self.started = asyncio.Event()

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def parse(self, text: str, context: CommandContext) -> Intent:
        self.calls.append(text)
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if callable(self.intent):
            return self.intent(text, context)
        if self.intent is None:
            return Intent(action=UNKNOWN_ACTION, confidence=0.0, source=self.name)
        return self.intent
