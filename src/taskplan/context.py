"""Tiered conversation memory with staged, deterministic compression.

Tiers are a view over the turn history, computed on read:

- working: the current and previous turn, kept verbatim;
- short-term: the rest of the last `short_term_turns` turns;
- medium-term: turns up to `medium_term_turns` back;
- long-term: session facts (project context, preferences, statistics) plus the
  key facts of every older turn.

When the rendered context exceeds a token budget, `COMPRESSION_STAGES` are
applied cumulatively, each one lowering a tier's retained ratio, until the
budget is met or the stages run out. Project context and preferences are
ratio-compressed but never dropped.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from taskplan.errors import StateCorruptionError
from taskplan.models import Context
from taskplan.serialization import dumps, loads
from taskplan.storage.base import StateStore
from taskplan.storage.common import from_iso

if TYPE_CHECKING:
    from taskplan.config import ContextSettings

logger = logging.getLogger(__name__)

CONVERSATION_KEY_PREFIX = "conversation:"
CONVERSATION_SCHEMA_VERSION = 1


class MemoryTier(str, Enum):
    WORKING = "working"
    SHORT_TERM = "short_term"
    MEDIUM_TERM = "medium_term"
    LONG_TERM = "long_term"


DEFAULT_RETENTION: Mapping[MemoryTier, float] = {
    MemoryTier.WORKING: 1.0,
    MemoryTier.SHORT_TERM: 0.95,
    MemoryTier.MEDIUM_TERM: 0.8,
    MemoryTier.LONG_TERM: 0.6,
}


@dataclass(frozen=True, slots=True)
class CompressionStage:
    name: str
    tier: MemoryTier
    ratio: float


COMPRESSION_STAGES: tuple[CompressionStage, ...] = (
    CompressionStage("medium_term_50", MemoryTier.MEDIUM_TERM, 0.5),
    CompressionStage("short_term_70", MemoryTier.SHORT_TERM, 0.7),
    CompressionStage("medium_term_30", MemoryTier.MEDIUM_TERM, 0.3),
    CompressionStage("short_term_50", MemoryTier.SHORT_TERM, 0.5),
    CompressionStage("drop_medium_term", MemoryTier.MEDIUM_TERM, 0.0),
    CompressionStage("long_term_50", MemoryTier.LONG_TERM, 0.5),
)


@dataclass(frozen=True, slots=True)
class Message:
    role: str
    content: str


@dataclass(slots=True)
class ConversationTurn:
    """One exchange: messages, the plan it touched, and extracted key facts."""

    turn_id: str
    messages: tuple[Message, ...]
    created_at: datetime
    plan_id: str | None = None
    token_count: int = 0
    key_facts: tuple[str, ...] = ()


@dataclass(slots=True)
class SessionFacts:
    """Session-level long-term memory."""

    project_context: dict[str, str] = field(default_factory=dict)
    preferences: dict[str, str] = field(default_factory=dict)
    statistics: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class CompressedContext:
    """Rendered context and the compression stage that produced it."""

    text: str
    token_count: int
    token_budget: int
    stage_name: str
    budget_met: bool
    ratios: dict[MemoryTier, float]


class TieredContextManager:
    """Keeps the turn history of one conversation and renders it under a budget."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        conversation_id: str,
        context: Context,
        chars_per_token: int = 4,
        working_turns: int = 2,
        short_term_turns: int = 10,
        medium_term_turns: int = 50,
        token_budget: int | None = None,
        facts: SessionFacts | None = None,
    ) -> None:
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be >= 1.")
        if not 0 < working_turns <= short_term_turns <= medium_term_turns:
            raise ValueError(
                "Expected 0 < working_turns <= short_term_turns <= medium_term_turns.",
            )
        self.conversation_id = conversation_id
        self.context = context
        self.chars_per_token = chars_per_token
        self.working_turns = working_turns
        self.short_term_turns = short_term_turns
        self.medium_term_turns = medium_term_turns
        self.token_budget = token_budget
        self.facts = facts or SessionFacts()
        self.turns: list[ConversationTurn] = []

    @classmethod
    def from_settings(
        cls,
        settings: ContextSettings,
        *,
        conversation_id: str,
        context: Context,
    ) -> TieredContextManager:
        return cls(
            conversation_id=conversation_id,
            context=context,
            chars_per_token=settings.chars_per_token,
            short_term_turns=settings.short_term_turns,
            medium_term_turns=settings.medium_term_turns,
            token_budget=settings.token_budget,
        )

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)

    def add_turn(
        self,
        messages: Iterable[Message],
        *,
        plan_id: str | None = None,
        key_facts: Iterable[str] = (),
    ) -> ConversationTurn:
        recorded = tuple(messages)
        turn = ConversationTurn(
            turn_id=f"turn-{len(self.turns) + 1}",
            messages=recorded,
            created_at=self.context.now(),
            plan_id=plan_id,
            token_count=sum(self.estimate_tokens(message.content) for message in recorded),
            key_facts=tuple(key_facts),
        )
        self.turns.append(turn)
        return turn

    def tiers(self) -> dict[MemoryTier, list[ConversationTurn]]:
        """Turns grouped by tier, oldest first within each tier."""

        grouped: dict[MemoryTier, list[ConversationTurn]] = {tier: [] for tier in MemoryTier}
        total = len(self.turns)
        for index, turn in enumerate(self.turns):
            grouped[self._tier_for(total - 1 - index)].append(turn)
        return grouped

    def long_term_facts(self) -> list[str]:
        """Key facts of turns that aged out of the medium-term window."""

        return [fact for turn in self.tiers()[MemoryTier.LONG_TERM] for fact in turn.key_facts]

    def render(self, ratios: Mapping[MemoryTier, float] | None = None) -> str:
        applied = {**DEFAULT_RETENTION, **(ratios or {})}
        tiers = self.tiers()
        sections: list[str] = []

        long_ratio = applied[MemoryTier.LONG_TERM]
        long_lines: list[str] = []
        for key, value in sorted(self.facts.project_context.items()):
            long_lines.append(f"project.{key}: {_shrink(value, long_ratio)}")
        for key, value in sorted(self.facts.preferences.items()):
            long_lines.append(f"preference.{key}: {_shrink(value, long_ratio)}")
        for key, number in sorted(self.facts.statistics.items()):
            long_lines.append(f"stat.{key}: {number:g}")
        for fact in self.long_term_facts():
            long_lines.append(f"fact: {_shrink(fact, long_ratio)}")
        if long_lines:
            sections.append("\n".join(["[long_term]", *long_lines]))

        for tier in (MemoryTier.MEDIUM_TERM, MemoryTier.SHORT_TERM, MemoryTier.WORKING):
            ratio = applied[tier]
            if ratio <= 0 or not tiers[tier]:
                continue
            lines = [
                f"{message.role}: {_shrink(message.content, ratio)}"
                for turn in tiers[tier]
                for message in turn.messages
            ]
            sections.append("\n".join([f"[{tier.value}]", *lines]))
        return "\n\n".join(sections)

    def build(self, token_budget: int | None = None) -> CompressedContext:
        """Render the context, compressing stage by stage until it fits.

        Without an explicit budget the manager's configured `token_budget` applies.
        """

        if token_budget is None:
            token_budget = self.token_budget
        if token_budget is None:
            raise ValueError("token_budget is required when the manager has no default.")
        if token_budget < 0:
            raise ValueError("token_budget must be >= 0.")
        ratios = dict(DEFAULT_RETENTION)
        text = self.render(ratios)
        tokens = self.estimate_tokens(text)
        stage_name = "none"
        for stage in COMPRESSION_STAGES:
            if tokens <= token_budget:
                break
            ratios[stage.tier] = min(ratios[stage.tier], stage.ratio)
            text = self.render(ratios)
            tokens = self.estimate_tokens(text)
            stage_name = stage.name

        budget_met = tokens <= token_budget
        if not budget_met:
            logger.warning(
                "Context %s exceeds budget after all stages: tokens=%d budget=%d",
                self.conversation_id,
                tokens,
                token_budget,
            )
        return CompressedContext(
            text=text,
            token_count=tokens,
            token_budget=token_budget,
            stage_name=stage_name,
            budget_met=budget_met,
            ratios=ratios,
        )

    def save(self, store: StateStore) -> None:
        store.set(conversation_key(self.conversation_id), dumps(self._to_payload()))

    @classmethod
    def load(
        cls,
        store: StateStore,
        *,
        conversation_id: str,
        context: Context,
        **options: Any,
    ) -> TieredContextManager:
        """Load a conversation; an unknown id yields an empty manager."""

        key = conversation_key(conversation_id)
        manager = cls(conversation_id=conversation_id, context=context, **options)
        stored = store.get(key)
        if stored is None:
            return manager
        try:
            payload = loads(stored.value)
            if payload.get("schema_version") != CONVERSATION_SCHEMA_VERSION:
                raise ValueError(f"Unsupported schema_version: {payload.get('schema_version')!r}")
            facts = payload.get("facts", {})
            manager.facts = SessionFacts(
                project_context=dict(facts.get("project_context", {})),
                preferences=dict(facts.get("preferences", {})),
                statistics={name: float(value) for name, value in facts.get("statistics", {}).items()},
            )
            manager.turns = [
                ConversationTurn(
                    turn_id=str(item["turn_id"]),
                    messages=tuple(
                        Message(role=str(message["role"]), content=str(message["content"]))
                        for message in item["messages"]
                    ),
                    created_at=from_iso(item["created_at"]),
                    plan_id=item.get("plan_id"),
                    token_count=int(item.get("token_count", 0)),
                    key_facts=tuple(item.get("key_facts", ())),
                )
                for item in payload["turns"]
            ]
        except (ValueError, KeyError, TypeError, AttributeError) as error:
            raise StateCorruptionError(
                key=key,
                last_good_checkpoint_id=None,
                reason=str(error) or type(error).__name__,
            ) from error
        return manager

    def _tier_for(self, turns_back: int) -> MemoryTier:
        if turns_back < self.working_turns:
            return MemoryTier.WORKING
        if turns_back < self.short_term_turns:
            return MemoryTier.SHORT_TERM
        if turns_back < self.medium_term_turns:
            return MemoryTier.MEDIUM_TERM
        return MemoryTier.LONG_TERM

    def _to_payload(self) -> dict[str, Any]:
        return {
            "schema_version": CONVERSATION_SCHEMA_VERSION,
            "conversation_id": self.conversation_id,
            "facts": {
                "project_context": self.facts.project_context,
                "preferences": self.facts.preferences,
                "statistics": self.facts.statistics,
            },
            "turns": [
                {
                    "turn_id": turn.turn_id,
                    "messages": [
                        {"role": message.role, "content": message.content}
                        for message in turn.messages
                    ],
                    "created_at": turn.created_at.isoformat(),
                    "plan_id": turn.plan_id,
                    "token_count": turn.token_count,
                    "key_facts": list(turn.key_facts),
                }
                for turn in self.turns
            ],
        }


def conversation_key(conversation_id: str) -> str:
    return f"{CONVERSATION_KEY_PREFIX}{conversation_id}"


def _shrink(text: str, ratio: float) -> str:
    """Keep the first ceil(n * ratio) words."""

    words = text.split()
    if ratio >= 1.0:
        return " ".join(words)
    keep = math.ceil(len(words) * ratio)
    return " ".join(words[:keep])
