"""Tiered lorebook retrieval for one turn.

    Tier 1  always-mode entries, and anything scored at or under tier1_threshold
    Tier 2  scored at or under tier2_threshold, or still sticky from a recent turn
    Tier 3  LLM-selected from the leftover candidates (optional, soft-failing)

Each entry lands in exactly one tier. Caps drop overflow; nothing is moved
down a tier. Within a tier, entries are ordered by boosted distance, then
static priority, then most recent activation, then input order.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import IntEnum

from pydantic import BaseModel, Field

from taleforge.cancellation import CancelToken, OperationTimeout
from taleforge.config import RetrievalConfig, ServiceConfig
from taleforge.llm import LLM, LLMError
from taleforge.models import KnowledgeEntry, StoryEntry
from taleforge.prompts import PromptError, PromptRenderer
from taleforge.retrieval.activation import ActivationTracker
from taleforge.retrieval.scoring import Scorer
from taleforge.structured import generate_structured

logger = logging.getLogger(__name__)

SUMMARY_CHARS = 100


class RetrievalTier(IntEnum):
    TIER1 = 1
    TIER2 = 2
    TIER3 = 3


class RetrievedEntry(BaseModel):
    entry: KnowledgeEntry
    tier: RetrievalTier
    distance: float
    reason: str


class RetrievalResult(BaseModel):
    tier1: list[RetrievedEntry] = Field(default_factory=list)
    tier2: list[RetrievedEntry] = Field(default_factory=list)
    tier3: list[RetrievedEntry] = Field(default_factory=list)

    @property
    def all(self) -> list[RetrievedEntry]:
        return [*self.tier1, *self.tier2, *self.tier3]

    def ids(self) -> list[str]:
        return [r.entry.id for r in self.all]


class EntrySelection(BaseModel):
    """Tier-3 reranker reply. Ids may come back as entry ids or list indices."""

    selected_ids: list[str | int] = Field(default_factory=list)
    reasoning: str = ""


class _Candidate:
    __slots__ = ("entry", "distance", "reason", "boosted", "order")

    def __init__(self, entry: KnowledgeEntry, distance: float, reason: str, order: int) -> None:
        self.entry = entry
        self.distance = distance
        self.reason = reason
        self.boosted = distance
        self.order = order

    def to_result(self, tier: RetrievalTier, reason: str | None = None) -> RetrievedEntry:
        return RetrievedEntry(
            entry=self.entry, tier=tier, distance=self.distance, reason=reason or self.reason,
        )


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class EntryRetrievalEngine:
    """Runs one turn's retrieval against a story's ActivationTracker.

    Args:
        tracker: The story's activation state; mutated by retrieve().
        config: Retrieval options from the turn's config snapshot.
        llm: Used for Tier-3 reranking. Without it (or without `options`)
            Tier 3 is always empty.
        options: Resolved entry_retrieval service.
    """

    def __init__(
        self,
        tracker: ActivationTracker,
        config: RetrievalConfig,
        *,
        llm: LLM | None = None,
        options: ServiceConfig | None = None,
        renderer: PromptRenderer | None = None,
        scorer: Scorer | None = None,
    ) -> None:
        self.tracker = tracker
        self.config = config
        self.llm = llm
        self.options = options
        self.renderer = renderer or PromptRenderer()
        self.scorer = scorer or Scorer(recent_window=config.recent_entries_count)

    def _sort_key(self, c: _Candidate) -> tuple:
        last = self.tracker.last_activated(c.entry.id)
        return (c.boosted, -c.entry.priority, -(last if last is not None else -1), c.order)

    async def retrieve(
        self,
        entries: Sequence[KnowledgeEntry],
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        turn_index: int,
        cancel: CancelToken | None = None,
    ) -> RetrievalResult:
        cfg = self.config
        self.tracker.decay_all(turn_index, cfg.decay_factor)

        tier1: list[_Candidate] = []
        tier2: list[_Candidate] = []
        pool: list[_Candidate] = []
        seen: set[str] = set()

        for order, entry in enumerate(entries):
            if entry.mode == "never" or entry.id in seen:
                continue
            seen.add(entry.id)

            m = self.scorer.match(entry, user_input, recent_entries)
            c = _Candidate(entry, _clamp(m.distance), m.reason, order)
            stickiness = self.tracker.stickiness(entry.id)
            sticky = stickiness > cfg.sticky_threshold

            if entry.mode == "always" or c.distance <= cfg.tier1_threshold:
                tier1.append(c)
            elif c.distance <= cfg.tier2_threshold or sticky:
                if sticky:
                    c.boosted = _clamp(c.distance - cfg.tier2_boost)
                    if c.distance > cfg.tier2_threshold:
                        c.reason = "sticky"
                tier2.append(c)
            else:
                if stickiness > 0:
                    c.boosted = _clamp(c.distance - cfg.tier3_boost * stickiness)
                pool.append(c)

        tier1.sort(key=self._sort_key)
        tier2.sort(key=self._sort_key)
        pool.sort(key=self._sort_key)

        if cfg.max_tier2 > 0 and len(tier2) > cfg.max_tier2:
            logger.debug("tier 2 capped: dropping %d entries", len(tier2) - cfg.max_tier2)
            tier2 = tier2[:cfg.max_tier2]

        tier3 = await self._select_tier3(pool, user_input, recent_entries, cancel)
        if cfg.max_tier3 > 0 and len(tier3) > cfg.max_tier3:
            tier3 = tier3[:cfg.max_tier3]

        for c in tier1:
            if c.entry.mode != "always":
                self.tracker.activate(c.entry.id, turn_index)
        for c in tier2:
            if c.reason != "sticky":
                self.tracker.activate(c.entry.id, turn_index)
        for c in tier3:
            self.tracker.activate(c.entry.id, turn_index)

        result = RetrievalResult(
            tier1=[c.to_result(RetrievalTier.TIER1) for c in tier1],
            tier2=[c.to_result(RetrievalTier.TIER2) for c in tier2],
            tier3=[c.to_result(RetrievalTier.TIER3, "llm-selected") for c in tier3],
        )
        logger.debug(
            "retrieval turn=%d tier1=%d tier2=%d tier3=%d (pool %d)",
            turn_index, len(result.tier1), len(result.tier2), len(result.tier3), len(pool),
        )
        return result

    # ------------------------------------------------------------------
    # Tier 3
    # ------------------------------------------------------------------

    async def _select_tier3(
        self,
        pool: list[_Candidate],
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        cancel: CancelToken | None,
    ) -> list[_Candidate]:
        cfg = self.config
        if not pool or not cfg.llm_selection_enabled:
            return []
        if self.llm is None or self.options is None:
            return []
        if len(pool) <= cfg.tier3_candidate_threshold:
            return []

        candidates = pool[:cfg.max_tier3_candidates] if cfg.max_tier3_candidates > 0 else pool
        recent = recent_entries[-cfg.recent_entries_count:] if cfg.recent_entries_count > 0 else []
        variables = {
            "input": user_input,
            "recent": [{"content": e.content} for e in recent],
            "candidates": [
                {
                    "index": i,
                    "id": c.entry.id,
                    "name": c.entry.name,
                    "type": c.entry.type,
                    "summary": c.entry.description[:SUMMARY_CHARS],
                }
                for i, c in enumerate(candidates)
            ],
        }

        try:
            prompt = self.renderer.render("tier3-entry-selection", variables)
            selection = await generate_structured(
                self.llm,
                "tier3-entry-selection",
                prompt.user,
                EntrySelection,
                system=prompt.system,
                options=self.options,
                cancel=cancel,
                timeout=cfg.rerank_timeout,
            )
        except (LLMError, OperationTimeout, PromptError) as e:
            logger.warning("tier 3 selection failed, continuing without it: %s", e)
            return []

        by_id = {c.entry.id: i for i, c in enumerate(candidates)}
        picked: set[int] = set()
        for raw in selection.selected_ids:
            key = str(raw).strip()
            if key in by_id:
                picked.add(by_id[key])
            elif key.isdigit() and int(key) < len(candidates):
                # not an id, read it as a candidate index
                picked.add(int(key))
        selected = [c for i, c in enumerate(candidates) if i in picked]
        logger.debug(
            "tier 3 selected %d of %d candidates: %s",
            len(selected), len(candidates), selection.reasoning,
        )
        return selected
