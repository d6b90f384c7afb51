"""Narrative: stream the story continuation and append it to the story log.

Chunks are appended to ctx.narrative and emitted as they arrive, so an
abort mid-stream leaves exactly the emitted text in the context. A
transient backend failure is retried once, and only while nothing has been
streamed yet. An empty reply is re-requested up to MAX_ATTEMPTS times.
Timeouts are fatal.
"""

from __future__ import annotations

import logging

from taleforge.config import PipelineConfig
from taleforge.llm import LLMError, TransientLLMError
from taleforge.models import StoryEntry
from taleforge.pipeline.context import PhaseName, PipelineContext
from taleforge.pipeline.events import NarrativeChunk
from taleforge.pipeline.phases import PhaseEnv

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


def narrative_variables(ctx: PipelineContext) -> dict:
    story = ctx.config.story
    return {
        "genre": story.genre,
        "tone": story.tone,
        "pov": story.pov,
        "tense": story.tense,
        "protagonist": story.protagonist_name,
        "adventure": story.mode == "adventure",
        "context": ctx.context.rendered if ctx.context else "",
        "recent": [
            {"content": e.content, "is_action": e.type == "user_action"}
            for e in ctx.recent_entries
        ],
        "input": ctx.user_input,
    }


class NarrativePhase:
    name: PhaseName = "narrative"

    def enabled(self, config: PipelineConfig) -> bool:
        return True

    async def run(self, ctx: PipelineContext, env: PhaseEnv) -> PipelineContext:
        svc = ctx.config.narrative
        if svc is None:
            raise LLMError("No narrative service configured")
        prompt = env.renderer.render("narrative", narrative_variables(ctx))

        ctx.narrative = ""
        retried_transient = False
        attempts = 0
        while True:
            attempts += 1
            try:
                stream = env.llm.stream("narrative", prompt.user, system=prompt.system, options=svc)
                # leading whitespace is held back until real text arrives
                pending = ""
                async for chunk in ctx.cancel.stream(stream, timeout=svc.timeout):
                    if not chunk:
                        continue
                    if not ctx.narrative and not chunk.strip():
                        pending += chunk
                        continue
                    chunk, pending = pending + chunk, ""
                    ctx.narrative += chunk
                    env.sink.emit(NarrativeChunk(ctx.story_id, chunk))
            except TransientLLMError as e:
                if ctx.narrative or retried_transient:
                    raise
                retried_transient = True
                logger.warning("narrative call failed, retrying once: %s", e)
                continue

            if ctx.narrative.strip():
                break
            if attempts >= MAX_ATTEMPTS:
                raise LLMError(f"Narrative model returned an empty response {attempts} times")
            logger.warning("empty narrative response (attempt %d/%d)", attempts, MAX_ATTEMPTS)
            ctx.narrative = ""

        await ctx.cancel.run(env.store.append_story_entries(ctx.story_id, [
            StoryEntry(id=f"{ctx.story_id}-t{ctx.turn_index}-action", type="user_action", content=ctx.user_input),
            StoryEntry(id=f"{ctx.story_id}-t{ctx.turn_index}-narration", type="narration", content=ctx.narrative.strip()),
        ]))
        logger.info("narrative complete story=%s turn=%d len=%d", ctx.story_id, ctx.turn_index, len(ctx.narrative))
        return ctx
