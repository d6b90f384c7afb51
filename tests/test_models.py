"""Tests for domain models: WorldState views and delta emptiness."""

from taleforge.models import (
    Character,
    ClassificationResult,
    Item,
    KnowledgeEntry,
    Location,
    NewCharacter,
    SceneInfo,
    StoryBeat,
    WorldState,
)


def test_knowledge_entry_defaults():
    entry = KnowledgeEntry(id="e1", name="Mira")
    assert entry.mode == "keyword-triggered"
    assert entry.type == "concept"
    assert entry.aliases == []
    assert entry.priority == 0


def test_current_location():
    world = WorldState(locations=[
        Location(id="loc-a", name="Dock"),
        Location(id="loc-b", name="Vault", current=True),
    ])
    assert world.current_location.name == "Vault"
    assert WorldState().current_location is None


def test_present_characters_excludes_protagonist_and_inactive():
    world = WorldState(characters=[
        Character(id="c1", name="Aren", relationship="self"),
        Character(id="c2", name="Mira"),
        Character(id="c3", name="Old Tom", status="deceased"),
    ])
    assert [c.name for c in world.present_characters] == ["Mira"]


def test_inventory_includes_worn_items():
    world = WorldState(items=[
        Item(id="i1", name="Compass"),
        Item(id="i2", name="Cloak", location="worn"),
        Item(id="i3", name="Chest", location="Vault"),
    ])
    assert [i.name for i in world.inventory] == ["Compass", "Cloak"]


def test_active_threads():
    world = WorldState(story_beats=[
        StoryBeat(id="b1", title="Find the relic", status="active"),
        StoryBeat(id="b2", title="Meet the fence"),
        StoryBeat(id="b3", title="Escape", status="completed"),
    ])
    assert [b.title for b in world.active_threads] == ["Find the relic", "Meet the fence"]


def test_classification_result_is_empty():
    assert ClassificationResult().is_empty()
    assert not ClassificationResult(new_characters=[NewCharacter(name="Mira")]).is_empty()


def test_scene_only_result_counts_as_empty():
    result = ClassificationResult(scene=SceneInfo(current_location_name="Dock"))
    assert result.is_empty()
