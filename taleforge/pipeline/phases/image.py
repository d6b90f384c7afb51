"""Image: pick illustratable scenes and generate them in the background.

Only the "agentic" image mode runs this phase; "inline" images are handled
when the narration is rendered and "none" disables images. Scene
identification happens inline, generation is handed to detached tasks that
report through ImageReady / ImageFailed. Every failure here is logged and
swallowed.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from taleforge.cancellation import OperationCancelled
from taleforge.config import PipelineConfig
from taleforge.images import ImageGenerator
from taleforge.pipeline import events
from taleforge.pipeline.context import ImageRequest, PhaseName, PipelineContext
from taleforge.pipeline.events import EventSink
from taleforge.pipeline.phases import PhaseEnv
from taleforge.structured import generate_structured

logger = logging.getLogger(__name__)


class Scene(BaseModel):
    prompt: str
    source_text: str = ""
    characters: list[str] = Field(default_factory=list)


class ScenePlan(BaseModel):
    scenes: list[Scene] = Field(default_factory=list)


async def _generate(
    generator: ImageGenerator,
    sink: EventSink,
    story_id: str,
    request: ImageRequest,
    size: str,
    model: str,
) -> None:
    try:
        image = await generator.generate(request.prompt, size=size, model=model)
    except Exception as e:
        logger.warning("image %s failed: %s", request.id, e)
        sink.emit(events.ImageFailed(story_id, request.id, str(e)))
        return
    sink.emit(events.ImageReady(story_id, request.id, image.base64, image.revised_prompt))


class ImagePhase:
    name: PhaseName = "image"

    def enabled(self, config: PipelineConfig) -> bool:
        return config.image_enabled

    async def run(self, ctx: PipelineContext, env: PhaseEnv) -> PipelineContext:
        settings = ctx.config.images
        svc = ctx.config.image_analysis
        present = ctx.world.present_characters
        try:
            prompt = env.renderer.render("scene-identification", {
                "max_scenes": settings.max_scenes,
                "style": settings.style,
                "characters": [{"name": c.name, "description": c.description} for c in present],
                "narration": ctx.narrative,
            })
            plan = await generate_structured(
                env.llm,
                "scene-identification",
                prompt.user,
                ScenePlan,
                system=prompt.system,
                options=svc,
                cancel=ctx.cancel,
                timeout=svc.timeout if svc else None,
            )
        except OperationCancelled:
            raise
        except Exception as e:
            logger.warning("scene identification failed, no images this turn: %s", e)
            return ctx

        scenes = plan.scenes[:max(0, settings.max_scenes)]
        ctx.images = [
            ImageRequest(
                id=f"{ctx.story_id}-t{ctx.turn_index}-img{i}",
                prompt=f"{s.prompt}, {settings.style}" if settings.style else s.prompt,
                source_text=s.source_text,
                characters=s.characters,
            )
            for i, s in enumerate(scenes)
        ]
        if not ctx.images:
            return ctx
        if env.image_generator is None or env.image_tasks is None:
            logger.warning("no image generator configured; %d scene(s) not generated", len(ctx.images))
            return ctx

        for request in ctx.images:
            env.image_tasks.spawn(
                _generate(env.image_generator, env.sink, ctx.story_id, request, settings.size, settings.model),
                name=request.id,
            )
        logger.info("queued %d image(s) for story=%s turn=%d", len(ctx.images), ctx.story_id, ctx.turn_index)
        return ctx
