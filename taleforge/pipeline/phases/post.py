"""PostGeneration: what-next suggestions for the reader.

Creative-writing stories get plot suggestions for the author; adventure
stories get action choices for the player. Both are translated when
translation of suggestions is on. Failures are non-fatal: the turn
finishes with no suggestions.

SuggestionsRefresher regenerates the same output outside a turn, from
whatever the story log currently ends with.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from taleforge.cancellation import CancelToken, OperationTimeout
from taleforge.config import PipelineConfig
from taleforge.llm import LLM, LLMError
from taleforge.models import ActionChoice, StoryEntry, Suggestion, WorldState
from taleforge.pipeline import events
from taleforge.pipeline.context import PhaseName, PipelineContext
from taleforge.pipeline.phases import PhaseEnv
from taleforge.pipeline.phases.translation import translate
from taleforge.prompts import PromptError, PromptRenderer
from taleforge.storage import Store
from taleforge.structured import generate_structured

logger = logging.getLogger(__name__)


class SuggestionList(BaseModel):
    suggestions: list[Suggestion] = Field(default_factory=list)


class ActionChoiceList(BaseModel):
    choices: list[ActionChoice] = Field(default_factory=list)


async def generate_followups(
    llm: LLM,
    renderer: PromptRenderer,
    config: PipelineConfig,
    world: WorldState,
    recent: list[StoryEntry],
    narration: str,
    cancel: CancelToken,
) -> list[Suggestion] | list[ActionChoice]:
    """Suggestions (creative-writing) or action choices (adventure), translated if enabled."""
    svc = config.suggestions
    timeout = svc.timeout if svc else None
    story = config.story

    items: list[Suggestion] | list[ActionChoice]
    if story.mode == "creative-writing":
        prompt = renderer.render("suggestions", {
            "threads": [b.model_dump() for b in world.active_threads],
            "recent": [{"content": e.content} for e in recent],
            "narration": narration,
        })
        result = await generate_structured(
            llm, "suggestions", prompt.user, SuggestionList,
            system=prompt.system, options=svc, cancel=cancel, timeout=timeout,
        )
        items = result.suggestions
    else:
        loc = world.current_location
        prompt = renderer.render("action-choices", {
            "protagonist": story.protagonist_name,
            "location": loc.name if loc else "",
            "characters": [c.model_dump() for c in world.present_characters],
            "inventory": [i.model_dump() for i in world.inventory],
            "narration": narration,
        })
        result = await generate_structured(
            llm, "action-choices", prompt.user, ActionChoiceList,
            system=prompt.system, options=svc, cancel=cancel, timeout=timeout,
        )
        items = result.choices

    tr = config.translation_settings
    if items and tr.translates_suggestions and config.translation is not None:
        for item in items:
            item.text = await translate(
                llm, renderer, item.text, tr.target_language, config.translation, cancel,
            )
    return items


class PostGenerationPhase:
    name: PhaseName = "post_generation"

    def enabled(self, config: PipelineConfig) -> bool:
        return True

    async def run(self, ctx: PipelineContext, env: PhaseEnv) -> PipelineContext:
        cfg = ctx.config
        if not cfg.suggestions_enabled or cfg.suggestions is None:
            return ctx
        try:
            items = await generate_followups(
                env.llm, env.renderer, cfg, ctx.world, ctx.recent_entries, ctx.narrative, ctx.cancel,
            )
        except (LLMError, OperationTimeout, PromptError) as e:
            logger.warning("post-generation suggestions failed: %s", e)
            env.sink.emit(events.Error(ctx.story_id, self.name, str(e), fatal=False, context=ctx))
            return ctx

        if cfg.story.mode == "creative-writing":
            ctx.suggestions = list(items)
        else:
            ctx.action_choices = list(items)
        return ctx


class SuggestionsRefresher:
    """Manual suggestions refresh outside a turn."""

    def __init__(self, llm: LLM, store: Store, renderer: PromptRenderer | None = None) -> None:
        self._llm = llm
        self._store = store
        self._renderer = renderer or PromptRenderer()

    async def refresh(
        self,
        story_id: str,
        config: PipelineConfig,
        cancel: CancelToken | None = None,
    ) -> list[Suggestion] | list[ActionChoice]:
        if config.suggestions is None:
            return []
        cancel = cancel or CancelToken()
        window = max(config.retrieval.recent_entries_count, 1)
        story = await cancel.run(self._store.get_story_entries(story_id, limit=window))
        world = await cancel.run(self._store.get_world_state(story_id))
        narration = next((e.content for e in reversed(story) if e.type == "narration"), "")
        if not narration:
            logger.debug("nothing to suggest from: story %s has no narration yet", story_id)
            return []
        return await generate_followups(
            self._llm, self._renderer, config, world, story[:-1], narration, cancel,
        )
