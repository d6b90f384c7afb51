"""Retrieval: tiered lorebook selection and context bundle assembly."""

from __future__ import annotations

from taleforge.config import PipelineConfig
from taleforge.pipeline.context import PhaseName, PipelineContext
from taleforge.pipeline.phases import PhaseEnv
from taleforge.retrieval.context import ContextBuilder
from taleforge.retrieval.engine import EntryRetrievalEngine


class RetrievalPhase:
    name: PhaseName = "retrieval"

    def enabled(self, config: PipelineConfig) -> bool:
        return True

    async def run(self, ctx: PipelineContext, env: PhaseEnv) -> PipelineContext:
        cfg = ctx.config
        # Entries are re-read every turn, never cached.
        entries = await ctx.cancel.run(env.store.get_entries(ctx.story_id))

        engine = EntryRetrievalEngine(
            env.tracker,
            cfg.retrieval,
            llm=env.llm,
            options=cfg.entry_retrieval if cfg.tier3_enabled else None,
            renderer=env.renderer,
        )
        result = await engine.retrieve(
            entries, ctx.user_input, ctx.recent_entries, ctx.turn_index, cancel=ctx.cancel,
        )
        ctx.cancel.raise_if_cancelled()

        builder = ContextBuilder(cfg.context)
        ctx.context = await ctx.cancel.run(builder.build(
            result,
            ctx.world,
            story_id=ctx.story_id,
            turn_text=ctx.user_input,
            chapter_lookup=env.chapter_lookup or env.store,
        ))
        return ctx
