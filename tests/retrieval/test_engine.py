"""Tests for EntryRetrievalEngine tier assignment and Tier-3 reranking."""

import asyncio
import copy

import pytest

from taleforge.cancellation import CancelToken, OperationCancelled
from taleforge.config import RetrievalConfig
from taleforge.llm import LLMError, TransientLLMError
from taleforge.models import KnowledgeEntry, StoryEntry
from taleforge.retrieval import ActivationTracker, EntryRetrievalEngine, RetrievalTier
from tests.stubs import StubLLM

STAGE = "tier3-entry-selection"

LORE = [
    KnowledgeEntry(id="world-rules", name="The Drowned Coast", mode="always",
                   description="Magic is tidal and fails at low water."),
    KnowledgeEntry(id="char-mira", name="Mira", aliases=["the smuggler"], type="character",
                   description="A smuggler who owes the harbourmaster."),
    KnowledgeEntry(id="item-sunstone", name="Sunstone", keywords=["relic"], type="item",
                   description="A warm stone that glows near the sea gate."),
    KnowledgeEntry(id="loc-vault", name="Tide Vault", type="location",
                   description="A sealed chamber below the harbour."),
    KnowledgeEntry(id="fac-wardens", name="Wardens", type="faction",
                   description="Harbour police loyal to the governor."),
    KnowledgeEntry(id="secret", name="Governor's Debt", mode="never",
                   description="Never shown."),
]


def _engine(tracker=None, llm=None, service=None, **cfg) -> EntryRetrievalEngine:
    return EntryRetrievalEngine(
        tracker if tracker is not None else ActivationTracker(),
        RetrievalConfig(**cfg),
        llm=llm,
        options=service,
    )


def _ids(entries) -> list[str]:
    return [r.entry.id for r in entries]


# ---------------------------------------------------------------------------
# Tiers 1 and 2
# ---------------------------------------------------------------------------

async def test_always_entries_are_tier1():
    result = await _engine().retrieve(LORE, "I wait.", [], 1)
    assert _ids(result.tier1) == ["world-rules"]
    assert result.tier1[0].reason == "always"
    assert result.tier1[0].tier == RetrievalTier.TIER1


async def test_keyword_hit_is_tier2_without_prior_activation():
    tracker = ActivationTracker()
    result = await _engine(tracker).retrieve(LORE, "Where is the relic?", [], 1)
    assert _ids(result.tier2) == ["item-sunstone"]
    assert result.tier2[0].reason == "keyword"
    assert result.tier2[0].distance == 0.1


async def test_never_mode_is_excluded():
    result = await _engine().retrieve(LORE, "the Governor's Debt", [], 1)
    assert "secret" not in result.ids()


async def test_each_entry_in_at_most_one_tier():
    entries = [*LORE, LORE[1].model_copy(update={"description": "duplicate"})]
    result = await _engine().retrieve(entries, "Mira shows me the relic", [], 1)
    ids = result.ids()
    assert len(ids) == len(set(ids))
    assert result.tier2[0].entry.description == LORE[1].description


async def test_recent_story_mentions_count():
    recent = [StoryEntry(id="s1", type="narration", content="The Wardens march past.")]
    result = await _engine().retrieve(LORE, "I hide.", recent, 2)
    assert _ids(result.tier2) == ["fac-wardens"]
    assert result.tier2[0].reason == "recent"


async def test_tier2_ordering_and_cap():
    entries = [
        KnowledgeEntry(id="low", name="Alpha", keywords=["storm"]),
        KnowledgeEntry(id="high", name="Beta", keywords=["storm"], priority=5),
        KnowledgeEntry(id="name", name="Storm"),
    ]
    result = await _engine(max_tier2=2).retrieve(entries, "the storm rises", [], 1)
    # name hit (0.05) beats keyword (0.1); priority breaks the keyword tie
    assert _ids(result.tier2) == ["name", "high"]


async def test_uncapped_tier2():
    entries = [KnowledgeEntry(id=f"e{i}", name=f"Gull{i}", keywords=["gull"]) for i in range(12)]
    result = await _engine(max_tier2=0).retrieve(entries, "a gull lands", [], 1)
    assert len(result.tier2) == 12


# ---------------------------------------------------------------------------
# Activation + stickiness
# ---------------------------------------------------------------------------

async def test_matched_entries_are_activated_but_always_entries_are_not():
    tracker = ActivationTracker()
    await _engine(tracker).retrieve(LORE, "Mira grins.", [], 4)
    assert tracker.last_activated("char-mira") == 4
    assert "world-rules" not in tracker


async def test_sticky_entry_stays_in_tier2_after_mention_fades():
    tracker = ActivationTracker()
    engine = _engine(tracker)
    await engine.retrieve(LORE, "Mira grins.", [], 1)
    result = await engine.retrieve(LORE, "I look at the sea.", [], 2)
    assert _ids(result.tier2) == ["char-mira"]
    assert result.tier2[0].reason == "sticky"
    # sticky carry-over does not refresh the activation
    assert tracker.last_activated("char-mira") == 1


async def test_sticky_entry_fades_out():
    tracker = ActivationTracker()
    engine = _engine(tracker, decay_factor=0.5)
    await engine.retrieve(LORE, "Mira grins.", [], 1)
    result = await engine.retrieve(LORE, "I look at the sea.", [], 3)  # 0.25 < 0.3
    assert "char-mira" not in result.ids()


async def test_retrieval_is_deterministic():
    tracker = ActivationTracker()
    await _engine(tracker).retrieve(LORE, "Mira grins.", [], 1)

    a, b = copy.deepcopy(tracker), copy.deepcopy(tracker)
    first = await _engine(a).retrieve(LORE, "The relic glows.", [], 2)
    second = await _engine(b).retrieve(LORE, "The relic glows.", [], 2)
    assert first == second
    assert a.snapshot() == b.snapshot()


# ---------------------------------------------------------------------------
# Tier 3
# ---------------------------------------------------------------------------

async def test_tier3_selects_by_id_and_index(service):
    llm = StubLLM({STAGE: ['{"selected_ids": ["loc-vault", 1], "reasoning": "the heist"}']})
    tracker = ActivationTracker()
    result = await _engine(tracker, llm, service).retrieve(LORE, "I plan the heist.", [], 3)
    # pool order: char-mira, item-sunstone, loc-vault, fac-wardens
    assert _ids(result.tier3) == ["item-sunstone", "loc-vault"]
    assert {r.reason for r in result.tier3} == {"llm-selected"}
    assert tracker.last_activated("loc-vault") == 3
    prompt = llm.stage_calls(STAGE)[0]
    assert "id=fac-wardens Wardens (faction)" in prompt
    assert "world-rules" not in prompt


NUMBERED = [
    KnowledgeEntry(id="lamp", name="Storm Lamp", description="Burns whale oil."),
    KnowledgeEntry(id="rope", name="Tarred Rope", description="Forty fathoms."),
    KnowledgeEntry(id="1", name="Harbour Ledger", description="Debts of the coast."),
    KnowledgeEntry(id="chart", name="Sea Chart", description="Marks the reef."),
]


async def test_tier3_numeric_id_wins_over_index(service):
    # pool order: lamp, rope, 1, chart
    llm = StubLLM({STAGE: ['{"selected_ids": ["1"]}']})
    result = await _engine(llm=llm, service=service).retrieve(NUMBERED, "Hm.", [], 1)
    assert _ids(result.tier3) == ["1"]


async def test_tier3_index_used_only_when_not_an_id(service):
    llm = StubLLM({STAGE: ['{"selected_ids": ["1", 3]}']})
    result = await _engine(llm=llm, service=service).retrieve(NUMBERED, "Hm.", [], 1)
    assert _ids(result.tier3) == ["1", "chart"]


async def test_tier3_cap(service):
    llm = StubLLM({STAGE: ['{"selected_ids": [0, 1, 2, 3]}']})
    result = await _engine(llm=llm, service=service, max_tier3=2).retrieve(LORE, "Hm.", [], 1)
    assert len(result.tier3) == 2


async def test_tier3_unknown_ids_ignored(service):
    llm = StubLLM({STAGE: ['{"selected_ids": ["nope", 99]}']})
    result = await _engine(llm=llm, service=service).retrieve(LORE, "Hm.", [], 1)
    assert result.tier3 == []


async def test_tier3_skipped_without_service():
    llm = StubLLM({})
    result = await _engine(llm=llm).retrieve(LORE, "Hm.", [], 1)
    assert result.tier3 == []
    assert llm.calls == []


async def test_tier3_skipped_when_disabled(service):
    llm = StubLLM({})
    engine = _engine(llm=llm, service=service, llm_selection_enabled=False)
    assert (await engine.retrieve(LORE, "Hm.", [], 1)).tier3 == []


async def test_tier3_skipped_under_candidate_threshold(service):
    llm = StubLLM({})
    engine = _engine(llm=llm, service=service, tier3_candidate_threshold=10)
    assert (await engine.retrieve(LORE, "Hm.", [], 1)).tier3 == []


@pytest.mark.parametrize("failure", [
    LLMError("HTTP 401"),
    TransientLLMError("down"),
])
async def test_tier3_failure_leaves_tier3_empty(service, failure):
    llm = StubLLM({STAGE: [failure]})
    result = await _engine(llm=llm, service=service).retrieve(LORE, "Mira and the relic", [], 1)
    assert result.tier3 == []
    assert _ids(result.tier2) == ["char-mira", "item-sunstone"]


async def test_tier3_malformed_twice_leaves_tier3_empty(service):
    llm = StubLLM({STAGE: ["no idea", "still no idea"]})
    result = await _engine(llm=llm, service=service).retrieve(LORE, "Hm.", [], 1)
    assert result.tier3 == []
    llm.assert_exhausted()


class _SlowLLM:
    async def __call__(self, stage, prompt, *, system="", options=None):
        await asyncio.sleep(3600)


async def test_tier3_timeout_leaves_tier3_empty(service):
    engine = _engine(llm=_SlowLLM(), service=service, rerank_timeout=0.01)
    result = await engine.retrieve(LORE, "Hm.", [], 1, cancel=CancelToken())
    assert result.tier3 == []


async def test_tier3_timeout_applies_without_cancel_token(service):
    engine = _engine(llm=_SlowLLM(), service=service, rerank_timeout=0.01)
    result = await asyncio.wait_for(engine.retrieve(LORE, "Hm.", [], 1), timeout=5)
    assert result.tier3 == []
    assert _ids(result.tier1) == ["world-rules"]


async def test_tier3_cancellation_propagates(service):
    token = CancelToken()
    engine = _engine(llm=_SlowLLM(), service=service)
    asyncio.get_running_loop().call_later(0.01, token.cancel)
    with pytest.raises(OperationCancelled):
        await engine.retrieve(LORE, "Hm.", [], 1, cancel=token)


async def test_always_entries_stay_tier1_every_turn():
    engine = _engine()
    for turn, text in enumerate(["Mira grins.", "The relic glows.", "Silence.", "Mira again."], 1):
        result = await engine.retrieve(LORE, text, [], turn)
        assert _ids(result.tier1) == ["world-rules"]
