"""Tests for the relevance Scorer."""

import pytest

from taleforge.models import KnowledgeEntry, StoryEntry
from taleforge.retrieval.scoring import Scorer, text_matches, tokenize


def _entry(**kw) -> KnowledgeEntry:
    kw.setdefault("id", "e1")
    kw.setdefault("name", "Mira")
    return KnowledgeEntry(**kw)


def _recent(*texts: str) -> list[StoryEntry]:
    return [StoryEntry(id=f"s{i}", type="narration", content=t) for i, t in enumerate(texts)]


def test_text_matches_substring_and_short_terms():
    assert text_matches("Mira", "i wave at mira.")
    assert not text_matches("a", "a cat")
    assert not text_matches("  ", "anything")


def test_tokenize_drops_stopwords_and_short_tokens():
    assert tokenize("The old lighthouse of Vel") == {"old", "lighthouse", "vel"}


def test_always_mode_is_zero():
    assert Scorer().match(_entry(mode="always"), "nothing here").reason == "always"
    assert Scorer().score(_entry(mode="always"), "nothing here") == 0.0


def test_name_match():
    m = Scorer().match(_entry(), "I ask MIRA about the map")
    assert (m.distance, m.reason) == (0.05, "name")


def test_alias_match():
    m = Scorer().match(_entry(aliases=["the Smuggler"]), "I follow the smuggler")
    assert m.reason == "name"


def test_keyword_match():
    m = Scorer().match(_entry(keywords=["contraband"]), "Is there contraband aboard?")
    assert (m.distance, m.reason) == (0.1, "keyword")


def test_recent_story_match():
    recent = _recent("Mira slips into the crowd.", "Gulls cry overhead.")
    m = Scorer().match(_entry(), "I look around", recent)
    assert (m.distance, m.reason) == (0.3, "recent")


def test_recent_window_limits_lookback():
    recent = _recent("Mira slips into the crowd.", "a", "b")
    assert Scorer(recent_window=2).match(_entry(), "I wait", recent).reason == "none"
    assert Scorer(recent_window=0).match(_entry(), "I wait", recent).reason == "none"


def test_overlap_only_for_relevance_ranked():
    entry = _entry(name="Old Lighthouse", description="A ruined lighthouse on the northern cliffs")
    turn = "We climb toward the northern cliffs"
    assert Scorer().match(entry, turn).reason == "none"

    ranked = entry.model_copy(update={"mode": "relevance-ranked"})
    m = Scorer().match(ranked, turn)
    assert m.reason == "overlap"
    # shared: northern, cliffs
    assert m.distance == pytest.approx(1 - 0.6 * 2 / 5)


def test_overlap_saturates():
    entry = _entry(
        name="Harbour",
        mode="relevance-ranked",
        description="salt fish nets ropes boats gulls tide",
    )
    m = Scorer().match(entry, "salt fish nets ropes boats gulls tide")
    assert m.distance == pytest.approx(0.4)


def test_no_match():
    m = Scorer().match(_entry(), "The rain keeps falling")
    assert (m.distance, m.reason) == (1.0, "none")


def test_distance_is_bounded():
    scorer = Scorer()
    for mode in ("always", "keyword-triggered", "relevance-ranked", "never"):
        d = scorer.score(_entry(mode=mode, keywords=["x1"]), "x1 mira rain")
        assert 0.0 <= d <= 1.0
