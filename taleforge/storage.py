"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM — reads and writes go through plain helper
methods that load and dump JSON. File I/O runs in a worker thread so the
pipeline's event loop never blocks on disk.

Directory layout:

    {base}/
      settings.json           ← Settings (defaults merged with stored values)
      stories/
        {story_id}/
          entries.json        ← list of KnowledgeEntry
          world.json          ← WorldState (without chapters)
          story.json          ← append-only StoryEntry log
          chapters.json       ← list of Chapter
          checkpoint.json     ← RetryCheckpoint, present only mid-turn
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Protocol

from taleforge.config import Settings
from taleforge.models import (
    Chapter,
    Character,
    ClassificationResult,
    Item,
    KnowledgeEntry,
    Location,
    StoryBeat,
    StoryEntry,
    WorldState,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols consumed by the pipeline
# ---------------------------------------------------------------------------

class ChapterEntryLookup(Protocol):
    async def get_chapter_entries(self, story_id: str, chapter: Chapter) -> list[StoryEntry]: ...


class Store(ChapterEntryLookup, Protocol):
    async def get_entries(self, story_id: str) -> list[KnowledgeEntry]: ...

    async def get_world_state(self, story_id: str) -> WorldState: ...

    async def get_story_entries(self, story_id: str, limit: int | None = None) -> list[StoryEntry]: ...

    async def append_story_entries(self, story_id: str, entries: list[StoryEntry]) -> None: ...

    async def apply_world_delta(self, story_id: str, delta: ClassificationResult) -> WorldState: ...

    async def read_checkpoint(self, story_id: str) -> dict[str, Any] | None: ...

    async def write_checkpoint(self, story_id: str, data: dict[str, Any]) -> None: ...

    async def delete_checkpoint(self, story_id: str) -> None: ...


class CheckpointCorrupt(Exception):
    """checkpoint.json exists but is not valid JSON."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._stories_root = self._base / "stories"
        self._stories_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _story_dir(self, story_id: str) -> Path:
        path = self._stories_root / story_id
        path.mkdir(exist_ok=True)
        return path

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False))
        tmp.replace(path)

    def _read_list(self, path: Path) -> list[dict]:
        if not path.exists():
            return []
        return self._read_json(path)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def _load_settings(self) -> Settings:
        path = self._base / "settings.json"
        if not path.exists():
            return Settings()
        return Settings().merged(self._read_json(path))

    async def get_settings(self) -> Settings:
        return await asyncio.to_thread(self._load_settings)

    async def update_settings(self, fields: dict) -> Settings:
        def _update() -> Settings:
            settings = self._load_settings().merged(fields)
            self._write_json(self._base / "settings.json", settings.model_dump())
            return settings
        return await asyncio.to_thread(_update)

    # ------------------------------------------------------------------
    # Knowledge entries
    # ------------------------------------------------------------------

    async def get_entries(self, story_id: str) -> list[KnowledgeEntry]:
        path = self._story_dir(story_id) / "entries.json"
        raw = await asyncio.to_thread(self._read_list, path)
        return [KnowledgeEntry.model_validate(e) for e in raw]

    async def save_entries(self, story_id: str, entries: list[KnowledgeEntry]) -> None:
        """Upsert entries by id; existing ids are overwritten in place."""
        path = self._story_dir(story_id) / "entries.json"

        def _save() -> None:
            existing = {e["id"]: e for e in self._read_list(path)}
            for entry in entries:
                existing[entry.id] = entry.model_dump()
            self._write_json(path, list(existing.values()))
        await asyncio.to_thread(_save)

    # ------------------------------------------------------------------
    # World state
    # ------------------------------------------------------------------

    def _load_world(self, story_id: str) -> WorldState:
        story_dir = self._story_dir(story_id)
        path = story_dir / "world.json"
        data = self._read_json(path) if path.exists() else {}
        data["chapters"] = self._read_list(story_dir / "chapters.json")
        return WorldState.model_validate(data)

    def _store_world(self, story_id: str, world: WorldState) -> None:
        self._write_json(
            self._story_dir(story_id) / "world.json",
            world.model_dump(exclude={"chapters"}),
        )

    async def get_world_state(self, story_id: str) -> WorldState:
        return await asyncio.to_thread(self._load_world, story_id)

    async def save_world_state(self, story_id: str, world: WorldState) -> None:
        await asyncio.to_thread(self._store_world, story_id, world)

    async def apply_world_delta(self, story_id: str, delta: ClassificationResult) -> WorldState:
        """Apply a classification delta. Upserts by name, so re-applying is a no-op."""
        def _apply() -> WorldState:
            world = self._load_world(story_id)
            apply_delta(world, delta)
            self._store_world(story_id, world)
            return world
        return await asyncio.to_thread(_apply)

    # ------------------------------------------------------------------
    # Story log (append-only)
    # ------------------------------------------------------------------

    async def get_story_entries(self, story_id: str, limit: int | None = None) -> list[StoryEntry]:
        path = self._story_dir(story_id) / "story.json"
        raw = await asyncio.to_thread(self._read_list, path)
        entries = [StoryEntry.model_validate(e) for e in raw]
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries

    async def append_story_entries(self, story_id: str, entries: list[StoryEntry]) -> None:
        """Append entries to the story log, skipping ids it already holds.

        A replayed turn writes the same deterministic ids again, so this is
        safe to repeat.
        """
        path = self._story_dir(story_id) / "story.json"

        def _append() -> None:
            existing = self._read_list(path)
            seen = {e.get("id") for e in existing}
            for entry in entries:
                if entry.id in seen:
                    logger.debug("story %s already holds entry %s", story_id, entry.id)
                    continue
                seen.add(entry.id)
                existing.append(entry.model_dump())
            self._write_json(path, existing)
        await asyncio.to_thread(_append)

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    async def get_chapters(self, story_id: str) -> list[Chapter]:
        path = self._story_dir(story_id) / "chapters.json"
        raw = await asyncio.to_thread(self._read_list, path)
        return [Chapter.model_validate(c) for c in raw]

    async def save_chapter(self, story_id: str, chapter: Chapter) -> None:
        """Upsert a chapter by number."""
        path = self._story_dir(story_id) / "chapters.json"

        def _save() -> None:
            chapters = [Chapter.model_validate(c) for c in self._read_list(path)]
            for i, c in enumerate(chapters):
                if c.number == chapter.number:
                    chapters[i] = chapter
                    break
            else:
                chapters.append(chapter)
            chapters.sort(key=lambda c: c.number)
            self._write_json(path, [c.model_dump() for c in chapters])
        await asyncio.to_thread(_save)

    async def get_chapter_entries(self, story_id: str, chapter: Chapter) -> list[StoryEntry]:
        """Story entries covered by a chapter (start_entry..end_entry, inclusive)."""
        entries = await self.get_story_entries(story_id)
        return entries[chapter.start_entry:chapter.end_entry + 1]

    # ------------------------------------------------------------------
    # Retry checkpoint
    # ------------------------------------------------------------------

    async def read_checkpoint(self, story_id: str) -> dict[str, Any] | None:
        """Return the stored checkpoint, or None. Raises CheckpointCorrupt on bad JSON."""
        path = self._story_dir(story_id) / "checkpoint.json"

        def _read() -> dict[str, Any] | None:
            if not path.exists():
                return None
            try:
                data = self._read_json(path)
            except json.JSONDecodeError as e:
                raise CheckpointCorrupt(str(e)) from e
            if not isinstance(data, dict):
                raise CheckpointCorrupt(f"expected an object, got {type(data).__name__}")
            return data
        return await asyncio.to_thread(_read)

    async def write_checkpoint(self, story_id: str, data: dict[str, Any]) -> None:
        path = self._story_dir(story_id) / "checkpoint.json"
        await asyncio.to_thread(self._write_json, path, data)

    async def delete_checkpoint(self, story_id: str) -> None:
        path = self._story_dir(story_id) / "checkpoint.json"
        await asyncio.to_thread(path.unlink, missing_ok=True)


# ---------------------------------------------------------------------------
# Delta application (pure, mutates the given WorldState)
# ---------------------------------------------------------------------------

def _make_id(prefix: str, name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")
    return f"{prefix}-{slug or 'unnamed'}"


def _find(items: list, name: str, attr: str = "name"):
    key = name.strip().lower()
    return next((x for x in items if getattr(x, attr).strip().lower() == key), None)


def apply_delta(world: WorldState, delta: ClassificationResult) -> None:
    """Upsert every change in the delta into world, matching by name."""
    for nc in delta.new_characters:
        existing = _find(world.characters, nc.name)
        if existing is None:
            world.characters.append(Character(
                id=_make_id("char", nc.name), name=nc.name, description=nc.description,
                relationship=nc.relationship, traits=list(nc.traits), status=nc.status,
            ))
        else:
            existing.description = nc.description or existing.description
            existing.relationship = nc.relationship or existing.relationship
            existing.traits = _merge_traits(existing.traits, nc.traits, [])

    for cu in delta.character_updates:
        char = _find(world.characters, cu.name)
        if char is None:
            logger.debug("update for unknown character %r ignored", cu.name)
            continue
        if cu.status is not None:
            char.status = cu.status
        if cu.relationship is not None:
            char.relationship = cu.relationship
        char.traits = _merge_traits(char.traits, cu.new_traits, cu.remove_traits)

    for nl in delta.new_locations:
        if nl.current:
            for loc in world.locations:
                loc.current = False
        existing = _find(world.locations, nl.name)
        if existing is None:
            world.locations.append(Location(
                id=_make_id("loc", nl.name), name=nl.name, description=nl.description,
                visited=nl.visited or nl.current, current=nl.current,
            ))
        else:
            existing.description = nl.description or existing.description
            existing.visited = existing.visited or nl.visited or nl.current
            existing.current = existing.current or nl.current

    for lu in delta.location_updates:
        loc = _find(world.locations, lu.name)
        if loc is None:
            logger.debug("update for unknown location %r ignored", lu.name)
            continue
        if lu.current:
            for other in world.locations:
                other.current = False
            loc.visited = True
        if lu.current is not None:
            loc.current = lu.current
        if lu.visited is not None:
            loc.visited = lu.visited or loc.current
        if lu.description_addition and lu.description_addition not in loc.description:
            loc.description = f"{loc.description} {lu.description_addition}".strip()

    for ni in delta.new_items:
        existing = _find(world.items, ni.name)
        if existing is None:
            world.items.append(Item(
                id=_make_id("item", ni.name), name=ni.name, description=ni.description,
                quantity=ni.quantity, location=ni.location,
            ))
        else:
            existing.description = ni.description or existing.description
            existing.quantity = ni.quantity
            existing.location = ni.location

    for iu in delta.item_updates:
        item = _find(world.items, iu.name)
        if item is None:
            logger.debug("update for unknown item %r ignored", iu.name)
            continue
        if iu.quantity is not None:
            item.quantity = iu.quantity
        if iu.location is not None:
            item.location = iu.location
        if iu.equipped is not None:
            item.equipped = iu.equipped

    for nb in delta.new_story_beats:
        existing = _find(world.story_beats, nb.title, attr="title")
        if existing is None:
            world.story_beats.append(StoryBeat(
                id=_make_id("beat", nb.title), title=nb.title, description=nb.description, status=nb.status,
            ))
        else:
            existing.description = nb.description or existing.description

    for bu in delta.story_beat_updates:
        beat = _find(world.story_beats, bu.title, attr="title")
        if beat is None:
            logger.debug("update for unknown story beat %r ignored", bu.title)
            continue
        beat.status = bu.status

    scene = delta.scene
    if scene.current_location_name:
        loc = _find(world.locations, scene.current_location_name)
        if loc is not None:
            for other in world.locations:
                other.current = False
            loc.current = True
            loc.visited = True


def _merge_traits(traits: list[str], add: list[str], remove: list[str]) -> list[str]:
    removed = {t.lower() for t in remove}
    merged = [t for t in traits if t.lower() not in removed]
    seen = {t.lower() for t in merged}
    for t in add:
        if t.lower() not in seen and t.lower() not in removed:
            merged.append(t)
            seen.add(t.lower())
    return merged
