"""Tests for ContextBuilder: block layout, budget trimming and chapter recall."""

import logging

from taleforge.config import ContextConfig
from taleforge.models import (
    Chapter,
    Character,
    Item,
    KnowledgeEntry,
    Location,
    StoryBeat,
    StoryEntry,
    WorldState,
)
from taleforge.retrieval.context import HEADER, ContextBuilder, truncate_words
from taleforge.retrieval.engine import RetrievalResult, RetrievedEntry, RetrievalTier


def _hit(entry_id: str, tier: RetrievalTier, description: str = "", type_: str = "concept") -> RetrievedEntry:
    entry = KnowledgeEntry(id=entry_id, name=entry_id.title(), type=type_, description=description)
    return RetrievedEntry(entry=entry, tier=tier, distance=0.1, reason="keyword")


WORLD = WorldState(
    characters=[
        Character(id="char-aren", name="Aren", relationship="self"),
        Character(id="char-mira", name="Mira", description="A smuggler"),
    ],
    locations=[Location(id="loc-dock", name="Salt Dock", description="Wet planks", current=True)],
    items=[
        Item(id="item-compass", name="Broken Compass"),
        Item(id="item-coin", name="Coin", quantity=3),
        Item(id="item-cloak", name="Cloak", location="worn"),
    ],
    story_beats=[StoryBeat(id="beat-vault", title="Find the vault", status="active")],
)

RESULT = RetrievalResult(
    tier1=[_hit("rules", RetrievalTier.TIER1, "Magic is tidal.")],
    tier2=[
        _hit("sunstone", RetrievalTier.TIER2, "A warm stone.", "item"),
        _hit("wardens", RetrievalTier.TIER2, "Harbour police.", "faction"),
    ],
    tier3=[_hit("vault", RetrievalTier.TIER3, "A sealed chamber.", "location")],
)


class _Lookup:
    def __init__(self, entries: list[StoryEntry]) -> None:
        self.entries = entries
        self.calls: list[int] = []

    async def get_chapter_entries(self, story_id, chapter):
        self.calls.append(chapter.number)
        return self.entries


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

async def test_rendered_layout():
    bundle = await ContextBuilder(ContextConfig(max_chars=0)).build(RESULT, WORLD)
    assert bundle.rendered.splitlines() == [
        *HEADER.splitlines(),
        "• Current location: Salt Dock: Wet planks",
        "• Present characters:",
        "  - Mira: A smuggler",
        "• Inventory:",
        "  - Broken Compass",
        "  - Coin (x3)",
        "  - Cloak (equipped)",
        "• Active threads:",
        "  - Find the vault [active]",
        "- [Lore] Rules: Magic is tidal.",
        "- [Item] Sunstone: A warm stone.",
        "- [Faction] Wardens: Harbour police.",
        "- [Location] Vault: A sealed chamber.",
    ]
    assert bundle.entry_ids == ["rules", "sunstone", "wardens", "vault"]
    assert bundle.dropped == []
    assert not bundle.clipped


async def test_empty_inputs_render_nothing():
    bundle = await ContextBuilder(ContextConfig()).build(RetrievalResult(), WorldState())
    assert bundle.rendered == ""
    assert bundle.blocks == []


async def test_build_is_deterministic():
    builder = ContextBuilder(ContextConfig(max_chars=300))
    assert await builder.build(RESULT, WORLD) == await builder.build(RESULT, WORLD)


def test_truncate_words():
    assert truncate_words("one two three", 0) == "one two three"
    assert truncate_words("one two three", 3) == "one two three"
    assert truncate_words("one two three", 2) == "one two [...]"


async def test_word_cap_applies_to_entries():
    builder = ContextBuilder(ContextConfig(max_chars=0, max_words_per_entry=1))
    bundle = await builder.build(RESULT, WorldState())
    assert "- [Item] Sunstone: A [...]" in bundle.rendered


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

async def test_budget_drops_tier3_before_tier2():
    full = await ContextBuilder(ContextConfig(max_chars=0)).build(RESULT, WorldState())
    limit = len(full.rendered) - 5
    bundle = await ContextBuilder(ContextConfig(max_chars=limit)).build(RESULT, WorldState())
    assert bundle.dropped == ["vault"]
    assert bundle.entry_ids == ["rules", "sunstone", "wardens"]
    assert len(bundle.rendered) <= limit


async def test_budget_drops_tier2_from_the_end():
    only_t1 = await ContextBuilder(ContextConfig(max_chars=0)).build(
        RetrievalResult(tier1=RESULT.tier1), WorldState(),
    )
    limit = len(only_t1.rendered) + len("\n- [Item] Sunstone: A warm stone.")
    bundle = await ContextBuilder(ContextConfig(max_chars=limit)).build(RESULT, WorldState())
    assert bundle.dropped == ["vault", "wardens"]
    assert [r.entry.id for r in bundle.tier2] == ["sunstone"]
    assert bundle.tier3 == []


async def test_tier1_is_never_dropped_but_clipped(caplog):
    builder = ContextBuilder(ContextConfig(max_chars=60))
    with caplog.at_level(logging.WARNING):
        bundle = await builder.build(RESULT, WORLD)
    assert bundle.clipped
    assert len(bundle.rendered) == 60
    assert bundle.rendered.endswith("\n[...]")
    assert [r.entry.id for r in bundle.tier1] == ["rules"]
    assert bundle.tier2 == [] and bundle.tier3 == []
    assert "clipping" in caplog.text


async def test_max_entries_caps_lorebook_blocks():
    builder = ContextBuilder(ContextConfig(max_chars=0, max_entries=2))
    bundle = await builder.build(RESULT, WORLD)
    assert bundle.entry_ids == ["rules", "sunstone"]
    assert "Current location" in bundle.rendered


# ---------------------------------------------------------------------------
# Chapter recall
# ---------------------------------------------------------------------------

CHAPTERS = [
    Chapter(number=1, title="The Salt Dock", summary="Aren meets Mira at the docks.", keywords=["docks"]),
    Chapter(number=2, title="Storm Night", summary="A storm wrecks the wardens' boats.", keywords=["storm"]),
    Chapter(number=3, title="Quiet Days", summary="Nothing happens."),
]


def test_matching_chapters_newest_first_and_capped():
    builder = ContextBuilder(ContextConfig(max_recalled_chapters=1))
    matched = builder.matching_chapters(CHAPTERS, "Back to the docks after the storm")
    assert [c.number for c in matched] == [2]


def test_summary_overlap_matches_chapter():
    builder = ContextBuilder(ContextConfig())
    matched = builder.matching_chapters(CHAPTERS, "the wardens' boats are gone")
    assert [c.number for c in matched] == [2]


async def test_chapter_recall_blocks_come_last():
    world = WorldState(chapters=CHAPTERS)
    lookup = _Lookup([StoryEntry(id="s1", type="narration", content="Mira waves from the pier.")])
    bundle = await ContextBuilder(ContextConfig(max_chars=0)).build(
        RESULT, world, story_id="s", turn_text="I return to the docks", chapter_lookup=lookup,
    )
    lines = bundle.rendered.splitlines()
    assert lines[-3:] == [
        "• Recalled from chapter 1: The Salt Dock",
        "  Aren meets Mira at the docks.",
        "  > Mira waves from the pier.",
    ]
    assert lookup.calls == [1]


async def test_chapter_recall_dropped_first_under_budget():
    world = WorldState(chapters=CHAPTERS)
    without = await ContextBuilder(ContextConfig(max_chars=0)).build(RESULT, WorldState())
    builder = ContextBuilder(ContextConfig(max_chars=len(without.rendered)))
    bundle = await builder.build(RESULT, world, turn_text="the docks")
    assert bundle.dropped == ["chapter:• Recalled from chapter 1: The Salt Dock"]
    assert bundle.entry_ids == ["rules", "sunstone", "wardens", "vault"]


async def test_chapter_recall_disabled():
    world = WorldState(chapters=CHAPTERS)
    builder = ContextBuilder(ContextConfig(max_chars=0, chapter_recall_enabled=False))
    bundle = await builder.build(RESULT, world, turn_text="the docks")
    assert "Recalled" not in bundle.rendered
