"""Working state threaded through the phases of one turn."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from taleforge.cancellation import CancelToken
from taleforge.config import PipelineConfig
from taleforge.models import (
    ActionChoice,
    ClassificationResult,
    StoryEntry,
    Suggestion,
    WorldState,
)
from taleforge.retrieval.context import ContextBundle

PhaseName = Literal[
    "pre_generation",
    "retrieval",
    "narrative",
    "classification",
    "translation",
    "image",
    "post_generation",
]

PHASE_ORDER: tuple[PhaseName, ...] = (
    "pre_generation",
    "retrieval",
    "narrative",
    "classification",
    "translation",
    "image",
    "post_generation",
)


class ImageRequest(BaseModel):
    id: str
    prompt: str
    source_text: str = ""
    characters: list[str] = Field(default_factory=list)


class PipelineContext(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    story_id: str
    user_input: str
    config: PipelineConfig
    turn_index: int = 0
    world: WorldState = Field(default_factory=WorldState)
    recent_entries: list[StoryEntry] = Field(default_factory=list)
    context: ContextBundle | None = None
    narrative: str = ""
    delta: ClassificationResult | None = None
    translation: str | None = None
    images: list[ImageRequest] = Field(default_factory=list)
    suggestions: list[Suggestion] = Field(default_factory=list)
    action_choices: list[ActionChoice] = Field(default_factory=list)
    phase: PhaseName | Literal["done"] | None = None
    completed_phases: list[PhaseName] = Field(default_factory=list)
    cancel: CancelToken = Field(default_factory=CancelToken, exclude=True)
