"""Pipeline phases.

Each phase is a small object with a `name`, an `enabled(config)` check and
`async run(ctx, env) -> ctx`. Phases mutate the context they are given (so
partial progress survives a cancellation) and return it. Recoverable
failures are handled inside the phase and reported as non-fatal Error
events; anything else propagates to the sequencer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from taleforge.config import PipelineConfig
from taleforge.images import ImageGenerator, ImageTaskTracker
from taleforge.llm import LLM
from taleforge.pipeline.context import PhaseName, PipelineContext
from taleforge.pipeline.events import EventSink
from taleforge.prompts import PromptRenderer
from taleforge.retrieval.activation import ActivationTracker
from taleforge.storage import ChapterEntryLookup, Store


@dataclass
class PhaseEnv:
    """Collaborators shared by every phase of one run."""

    llm: LLM
    store: Store
    sink: EventSink
    renderer: PromptRenderer
    tracker: ActivationTracker
    chapter_lookup: ChapterEntryLookup | None = None
    image_generator: ImageGenerator | None = None
    image_tasks: ImageTaskTracker | None = None


class Phase(Protocol):
    name: PhaseName

    def enabled(self, config: PipelineConfig) -> bool: ...

    async def run(self, ctx: PipelineContext, env: PhaseEnv) -> PipelineContext: ...


def default_phases() -> list[Phase]:
    from taleforge.pipeline.phases.classification import ClassificationPhase
    from taleforge.pipeline.phases.image import ImagePhase
    from taleforge.pipeline.phases.narrative import NarrativePhase
    from taleforge.pipeline.phases.post import PostGenerationPhase
    from taleforge.pipeline.phases.pre import PreGenerationPhase
    from taleforge.pipeline.phases.retrieval import RetrievalPhase
    from taleforge.pipeline.phases.translation import TranslationPhase

    return [
        PreGenerationPhase(),
        RetrievalPhase(),
        NarrativePhase(),
        ClassificationPhase(),
        TranslationPhase(),
        ImagePhase(),
        PostGenerationPhase(),
    ]
