"""Classification: extract world-state changes from the new narration.

Never fatal. A transient failure is retried once; malformed output gets the
single repair attempt inside generate_structured. Whatever still fails
degrades to an empty delta, reported as a non-fatal Error event.
"""

from __future__ import annotations

import logging

from taleforge.cancellation import OperationTimeout
from taleforge.config import PipelineConfig
from taleforge.llm import LLMError, TransientLLMError
from taleforge.models import ClassificationResult
from taleforge.pipeline import events
from taleforge.pipeline.context import PhaseName, PipelineContext
from taleforge.pipeline.phases import PhaseEnv
from taleforge.prompts import PromptError
from taleforge.structured import generate_structured

logger = logging.getLogger(__name__)


class ClassificationPhase:
    name: PhaseName = "classification"

    def enabled(self, config: PipelineConfig) -> bool:
        return True

    async def _classify(self, ctx: PipelineContext, env: PhaseEnv) -> ClassificationResult:
        svc = ctx.config.classification
        world = ctx.world
        prompt = env.renderer.render("classifier", {
            "characters": [c.model_dump() for c in world.characters],
            "locations": [loc.model_dump() for loc in world.locations],
            "items": [i.model_dump() for i in world.items],
            "beats": [b.model_dump() for b in world.story_beats],
            "input": ctx.user_input,
            "narration": ctx.narrative,
        })

        async def _call() -> ClassificationResult:
            return await generate_structured(
                env.llm,
                "classification",
                prompt.user,
                ClassificationResult,
                system=prompt.system,
                options=svc,
                cancel=ctx.cancel,
                timeout=svc.timeout if svc else None,
            )

        try:
            return await _call()
        except TransientLLMError as e:
            logger.warning("classification call failed, retrying once: %s", e)
        return await _call()

    async def run(self, ctx: PipelineContext, env: PhaseEnv) -> PipelineContext:
        try:
            delta = await self._classify(ctx, env)
        except (LLMError, OperationTimeout, PromptError) as e:
            logger.warning("classification failed, no world update this turn: %s", e)
            env.sink.emit(events.Error(ctx.story_id, self.name, str(e), fatal=False, context=ctx))
            delta = ClassificationResult()

        if not delta.is_empty() or delta.scene.current_location_name:
            ctx.world = await ctx.cancel.run(env.store.apply_world_delta(ctx.story_id, delta))
        ctx.delta = delta
        env.sink.emit(events.ClassificationComplete(ctx.story_id, delta))
        return ctx
