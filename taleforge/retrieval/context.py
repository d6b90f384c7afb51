"""Context bundle assembly: live world facts + retrieved entries, under budget.

Block order in the rendered string:

    live world facts (Tier 1, never scored)
    Tier 1 entries
    Tier 2 entries
    Tier 3 entries
    chapter recall

When the rendered text is over max_chars (or the entry count over
max_entries), blocks are dropped from the end of the chapter recall section,
then Tier 3, then Tier 2. Tier 1 blocks are never dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, Field

from taleforge.config import ContextConfig
from taleforge.models import Chapter, KnowledgeEntry, StoryEntry, WorldState
from taleforge.retrieval.engine import RetrievalResult, RetrievedEntry, RetrievalTier
from taleforge.retrieval.scoring import text_matches, tokenize
from taleforge.storage import ChapterEntryLookup

logger = logging.getLogger(__name__)

HEADER = (
    "[LOREBOOK CONTEXT]\n"
    "(CANONICAL - All information below is established lore. Do not contradict these facts.)"
)
CLIP_MARKER = "\n[...]"
RECALL_ENTRIES = 3
RECALL_ENTRY_CHARS = 300

_TYPE_LABELS = {
    "character": "Character",
    "location": "Location",
    "item": "Item",
    "faction": "Faction",
    "concept": "Lore",
    "event": "Event",
}


class ContextBlock(BaseModel):
    tier: RetrievalTier
    origin: Literal["live", "lorebook", "chapter"]
    text: str
    entry_id: str | None = None


class ContextBundle(BaseModel):
    blocks: list[ContextBlock] = Field(default_factory=list)
    tier1: list[RetrievedEntry] = Field(default_factory=list)
    tier2: list[RetrievedEntry] = Field(default_factory=list)
    tier3: list[RetrievedEntry] = Field(default_factory=list)
    rendered: str = ""
    dropped: list[str] = Field(default_factory=list)
    clipped: bool = False

    @property
    def entry_ids(self) -> list[str]:
        return [r.entry.id for r in (*self.tier1, *self.tier2, *self.tier3)]


def truncate_words(text: str, max_words: int) -> str:
    if max_words <= 0:
        return text
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + " [...]"


def render_blocks(blocks: Sequence[ContextBlock]) -> str:
    if not blocks:
        return ""
    return "\n".join([HEADER, *(b.text for b in blocks)])


class ContextBuilder:
    def __init__(self, config: ContextConfig) -> None:
        self.config = config

    # ------------------------------------------------------------------
    # Block rendering
    # ------------------------------------------------------------------

    def _entry_block(self, retrieved: RetrievedEntry) -> ContextBlock:
        entry: KnowledgeEntry = retrieved.entry
        label = _TYPE_LABELS.get(entry.type, entry.type.title())
        desc = truncate_words(entry.description.strip(), self.config.max_words_per_entry)
        text = f"- [{label}] {entry.name}: {desc}" if desc else f"- [{label}] {entry.name}"
        return ContextBlock(tier=retrieved.tier, origin="lorebook", text=text, entry_id=entry.id)

    def _live_blocks(self, world: WorldState) -> list[ContextBlock]:
        words = self.config.max_words_per_entry
        lines: list[str] = []
        loc = world.current_location
        if loc is not None:
            desc = truncate_words(loc.description.strip(), words)
            lines.append(f"• Current location: {loc.name}" + (f": {desc}" if desc else ""))
        present = world.present_characters
        if present:
            lines.append("• Present characters:")
            for c in present:
                desc = truncate_words(c.description.strip(), words)
                lines.append(f"  - {c.name}" + (f": {desc}" if desc else ""))
        inventory = world.inventory
        if inventory:
            lines.append("• Inventory:")
            for item in inventory:
                extra = []
                if item.quantity != 1:
                    extra.append(f"x{item.quantity}")
                if item.equipped or item.location == "worn":
                    extra.append("equipped")
                suffix = f" ({', '.join(extra)})" if extra else ""
                lines.append(f"  - {item.name}{suffix}")
        threads = world.active_threads
        if threads:
            lines.append("• Active threads:")
            for beat in threads:
                desc = truncate_words(beat.description.strip(), words)
                lines.append(f"  - {beat.title} [{beat.status}]" + (f": {desc}" if desc else ""))
        return [ContextBlock(tier=RetrievalTier.TIER1, origin="live", text=line) for line in lines]

    # ------------------------------------------------------------------
    # Chapter recall
    # ------------------------------------------------------------------

    def matching_chapters(self, chapters: Sequence[Chapter], turn_text: str) -> list[Chapter]:
        """Chapters whose title, keywords or summary match the turn text, newest first."""
        content = turn_text.lower()
        turn_tokens = tokenize(content)
        matched = []
        for ch in chapters:
            terms = [ch.title, *ch.keywords]
            if any(text_matches(t, content) for t in terms if t):
                matched.append(ch)
            elif len(tokenize(ch.summary) & turn_tokens) >= 2:
                matched.append(ch)
        matched.sort(key=lambda ch: ch.number, reverse=True)
        return matched[:max(0, self.config.max_recalled_chapters)]

    async def _recall_blocks(
        self,
        story_id: str,
        chapters: Sequence[Chapter],
        turn_text: str,
        lookup: ChapterEntryLookup | None,
    ) -> list[ContextBlock]:
        if not self.config.chapter_recall_enabled or not chapters:
            return []
        blocks = []
        for ch in sorted(self.matching_chapters(chapters, turn_text), key=lambda c: c.number):
            title = f": {ch.title}" if ch.title else ""
            lines = [f"• Recalled from chapter {ch.number}{title}"]
            if ch.summary:
                lines.append(f"  {ch.summary.strip()}")
            if lookup is not None:
                entries: list[StoryEntry] = await lookup.get_chapter_entries(story_id, ch)
                for e in entries[-RECALL_ENTRIES:]:
                    text = e.content.strip().replace("\n", " ")
                    if len(text) > RECALL_ENTRY_CHARS:
                        text = text[:RECALL_ENTRY_CHARS].rstrip() + " [...]"
                    lines.append(f"  > {text}")
            blocks.append(ContextBlock(tier=RetrievalTier.TIER3, origin="chapter", text="\n".join(lines)))
        return blocks

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build(
        self,
        result: RetrievalResult,
        world: WorldState,
        *,
        story_id: str = "",
        turn_text: str = "",
        chapter_lookup: ChapterEntryLookup | None = None,
    ) -> ContextBundle:
        blocks = [
            *self._live_blocks(world),
            *(self._entry_block(r) for r in result.tier1),
            *(self._entry_block(r) for r in result.tier2),
            *(self._entry_block(r) for r in result.tier3),
            *await self._recall_blocks(story_id, world.chapters, turn_text, chapter_lookup),
        ]
        blocks, dropped = self._enforce_budget(blocks)

        rendered = render_blocks(blocks)
        clipped = False
        limit = self.config.max_chars
        if limit > 0 and len(rendered) > limit:
            logger.warning(
                "tier 1 context alone is %d chars, over the %d char budget; clipping",
                len(rendered), limit,
            )
            rendered = rendered[:max(0, limit - len(CLIP_MARKER))] + CLIP_MARKER
            rendered = rendered[:limit]
            clipped = True

        kept = {b.entry_id for b in blocks if b.entry_id}
        return ContextBundle(
            blocks=blocks,
            tier1=list(result.tier1),
            tier2=[r for r in result.tier2 if r.entry.id in kept],
            tier3=[r for r in result.tier3 if r.entry.id in kept],
            rendered=rendered,
            dropped=dropped,
            clipped=clipped,
        )

    def _enforce_budget(self, blocks: list[ContextBlock]) -> tuple[list[ContextBlock], list[str]]:
        blocks = list(blocks)
        dropped: list[str] = []
        limit = self.config.max_chars
        max_entries = self.config.max_entries

        def over(count_entries: bool) -> bool:
            if limit > 0 and len(render_blocks(blocks)) > limit:
                return True
            if count_entries and max_entries > 0:
                return sum(1 for b in blocks if b.origin == "lorebook") > max_entries
            return False

        # chapter recall, then tier 3, then tier 2; last block first
        for origin, tier in (
            ("chapter", RetrievalTier.TIER3),
            ("lorebook", RetrievalTier.TIER3),
            ("lorebook", RetrievalTier.TIER2),
        ):
            while over(count_entries=origin == "lorebook"):
                idx = next(
                    (i for i in range(len(blocks) - 1, -1, -1)
                     if blocks[i].origin == origin and blocks[i].tier == tier),
                    None,
                )
                if idx is None:
                    break
                removed = blocks.pop(idx)
                dropped.append(removed.entry_id or f"{removed.origin}:{removed.text.splitlines()[0]}")
        if dropped:
            logger.debug("context budget dropped %d block(s)", len(dropped))
        return blocks, dropped
