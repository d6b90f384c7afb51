"""Core domain models.

Knowledge entries, world state and the classifier's delta set. Retrieval and
pipeline types live next to the code that produces them.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

EntryType = Literal["character", "location", "item", "faction", "concept", "event"]

InjectionMode = Literal["always", "keyword-triggered", "relevance-ranked", "never"]


class KnowledgeEntry(BaseModel):
    """A lorebook entry: one unit of world knowledge."""

    id: str
    name: str
    type: EntryType = "concept"
    description: str = ""
    aliases: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    mode: InjectionMode = "keyword-triggered"
    priority: int = 0


# ---------------------------------------------------------------------------
# World state
# ---------------------------------------------------------------------------

class Character(BaseModel):
    id: str
    name: str
    description: str = ""
    status: Literal["active", "inactive", "deceased"] = "active"
    relationship: str | None = None  # "self" marks the protagonist
    traits: list[str] = Field(default_factory=list)


class Location(BaseModel):
    id: str
    name: str
    description: str = ""
    visited: bool = False
    current: bool = False


class Item(BaseModel):
    id: str
    name: str
    description: str = ""
    quantity: int = 1
    location: str = "inventory"  # "inventory", "worn", or a location name
    equipped: bool = False


class StoryBeat(BaseModel):
    """A quest thread or plot point the story is tracking."""

    id: str
    title: str
    description: str = ""
    status: Literal["pending", "active", "completed", "failed"] = "pending"


class StoryEntry(BaseModel):
    """One entry in a story's append-only narrative log."""

    id: str
    type: Literal["user_action", "narration"]
    content: str


class Chapter(BaseModel):
    """A summarised span of the story log (entries start..end, inclusive)."""

    number: int
    title: str = ""
    summary: str = ""
    keywords: list[str] = Field(default_factory=list)
    start_entry: int = 0
    end_entry: int = 0


class WorldState(BaseModel):
    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)
    story_beats: list[StoryBeat] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)

    @property
    def current_location(self) -> Location | None:
        return next((loc for loc in self.locations if loc.current), None)

    @property
    def present_characters(self) -> list[Character]:
        return [
            c for c in self.characters
            if c.status == "active" and c.relationship != "self"
        ]

    @property
    def inventory(self) -> list[Item]:
        return [i for i in self.items if i.location in ("inventory", "worn")]

    @property
    def active_threads(self) -> list[StoryBeat]:
        return [b for b in self.story_beats if b.status in ("active", "pending")]


# ---------------------------------------------------------------------------
# Classifier delta set
# ---------------------------------------------------------------------------

class CharacterUpdate(BaseModel):
    name: str
    status: Literal["active", "inactive", "deceased"] | None = None
    relationship: str | None = None
    new_traits: list[str] = Field(default_factory=list)
    remove_traits: list[str] = Field(default_factory=list)


class LocationUpdate(BaseModel):
    name: str
    visited: bool | None = None
    current: bool | None = None
    description_addition: str | None = None


class ItemUpdate(BaseModel):
    name: str
    quantity: int | None = None
    location: str | None = None
    equipped: bool | None = None


class StoryBeatUpdate(BaseModel):
    title: str
    status: Literal["pending", "active", "completed", "failed"]


class NewCharacter(BaseModel):
    name: str
    description: str = ""
    relationship: str | None = None
    traits: list[str] = Field(default_factory=list)
    status: Literal["active", "inactive", "deceased"] = "active"


class NewLocation(BaseModel):
    name: str
    description: str = ""
    visited: bool = False
    current: bool = False


class NewItem(BaseModel):
    name: str
    description: str = ""
    quantity: int = 1
    location: str = "inventory"


class NewStoryBeat(BaseModel):
    title: str
    description: str = ""
    status: Literal["pending", "active"] = "pending"


class SceneInfo(BaseModel):
    present_character_names: list[str] = Field(default_factory=list)
    current_location_name: str | None = None


class ClassificationResult(BaseModel):
    """World-state changes extracted from one narrative response."""

    new_characters: list[NewCharacter] = Field(default_factory=list)
    character_updates: list[CharacterUpdate] = Field(default_factory=list)
    new_locations: list[NewLocation] = Field(default_factory=list)
    location_updates: list[LocationUpdate] = Field(default_factory=list)
    new_items: list[NewItem] = Field(default_factory=list)
    item_updates: list[ItemUpdate] = Field(default_factory=list)
    new_story_beats: list[NewStoryBeat] = Field(default_factory=list)
    story_beat_updates: list[StoryBeatUpdate] = Field(default_factory=list)
    scene: SceneInfo = Field(default_factory=SceneInfo)

    def is_empty(self) -> bool:
        return not any((
            self.new_characters, self.character_updates,
            self.new_locations, self.location_updates,
            self.new_items, self.item_updates,
            self.new_story_beats, self.story_beat_updates,
        ))


# ---------------------------------------------------------------------------
# Post-generation output
# ---------------------------------------------------------------------------

class Suggestion(BaseModel):
    text: str
    type: Literal["action", "dialogue", "revelation", "twist"] = "action"


class ActionChoice(BaseModel):
    text: str
    type: Literal["action", "dialogue", "examine", "move"] = "action"
