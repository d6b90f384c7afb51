"""PreGeneration: load the world and story window the turn works from."""

from __future__ import annotations

import logging

from taleforge.config import PipelineConfig
from taleforge.pipeline.context import PhaseName, PipelineContext
from taleforge.pipeline.phases import PhaseEnv

logger = logging.getLogger(__name__)


class PreGenerationPhase:
    name: PhaseName = "pre_generation"

    def enabled(self, config: PipelineConfig) -> bool:
        return True

    async def run(self, ctx: PipelineContext, env: PhaseEnv) -> PipelineContext:
        story = await ctx.cancel.run(env.store.get_story_entries(ctx.story_id))
        ctx.world = await ctx.cancel.run(env.store.get_world_state(ctx.story_id))

        window = max(ctx.config.retrieval.recent_entries_count, 0)
        ctx.recent_entries = story[-window:] if window else []
        ctx.turn_index = sum(1 for e in story if e.type == "user_action") + 1

        logger.debug(
            "pre-generation story=%s turn=%d log=%d characters=%d locations=%d",
            ctx.story_id, ctx.turn_index, len(story),
            len(ctx.world.characters), len(ctx.world.locations),
        )
        return ctx
