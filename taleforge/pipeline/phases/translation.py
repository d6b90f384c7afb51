"""Translation: narration into the configured target language."""

from __future__ import annotations

import logging

from taleforge.cancellation import CancelToken, OperationTimeout
from taleforge.config import PipelineConfig, ServiceConfig
from taleforge.llm import LLM, LLMError
from taleforge.pipeline import events
from taleforge.pipeline.context import PhaseName, PipelineContext
from taleforge.pipeline.phases import PhaseEnv
from taleforge.prompts import PromptError, PromptRenderer

logger = logging.getLogger(__name__)


async def translate(
    llm: LLM,
    renderer: PromptRenderer,
    text: str,
    language: str,
    options: ServiceConfig,
    cancel: CancelToken,
) -> str:
    prompt = renderer.render("translation", {"language": language, "text": text})
    reply = await cancel.run(
        llm("translation", prompt.user, system=prompt.system, options=options),
        timeout=options.timeout,
    )
    return reply.strip()


class TranslationPhase:
    name: PhaseName = "translation"

    def enabled(self, config: PipelineConfig) -> bool:
        return config.translation_enabled

    async def run(self, ctx: PipelineContext, env: PhaseEnv) -> PipelineContext:
        svc = ctx.config.translation
        language = ctx.config.translation_settings.target_language
        try:
            ctx.translation = await translate(
                env.llm, env.renderer, ctx.narrative, language, svc, ctx.cancel,
            )
        except (LLMError, OperationTimeout, PromptError) as e:
            logger.warning("translation to %s failed: %s", language, e)
            env.sink.emit(events.Error(ctx.story_id, self.name, str(e), fatal=False, context=ctx))
            ctx.translation = None
        return ctx
