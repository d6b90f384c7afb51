"""Phase sequencer for one turn.

    PreGeneration → Retrieval → Narrative → Classification
        → [Translation] → [Image] → PostGeneration → Done

Disabled phases are skipped without events. Outcomes:

    Done     every phase finished; the checkpoint is deleted
    Aborted  the cancel token fired; partial narrative kept, checkpoint kept
    Error    a phase raised; one fatal Error event, checkpoint kept

Checkpoints: at turn start (nothing completed), right before Narrative, and
after every phase from Narrative on. resume() continues after the last
completed phase of the stored checkpoint.
"""

from __future__ import annotations

import logging

from taleforge.cancellation import CancelToken, OperationCancelled
from taleforge.config import PipelineConfig
from taleforge.images import ImageGenerator, ImageTaskTracker
from taleforge.llm import LLM
from taleforge.pipeline import events
from taleforge.pipeline.context import PhaseName, PipelineContext
from taleforge.pipeline.events import EventSink
from taleforge.pipeline.phases import Phase, PhaseEnv, default_phases
from taleforge.pipeline.retry import RetryService
from taleforge.prompts import PromptRenderer
from taleforge.retrieval.activation import ActivationTracker
from taleforge.storage import ChapterEntryLookup, Store

logger = logging.getLogger(__name__)


class GenerationPipeline:
    """Runs turns for any number of stories; one turn per story at a time.

    Args:
        llm: Text-generation client shared by every phase.
        store: Persistent store (entries, world, story log, checkpoints).
        sink: Receives every pipeline event.
        chapter_lookup: Source of full chapter entries for recall. Defaults
            to the store.
        image_generator / image_tasks: Needed for agentic image mode.
    """

    def __init__(
        self,
        *,
        llm: LLM,
        store: Store,
        sink: EventSink,
        renderer: PromptRenderer | None = None,
        chapter_lookup: ChapterEntryLookup | None = None,
        image_generator: ImageGenerator | None = None,
        image_tasks: ImageTaskTracker | None = None,
        phases: list[Phase] | None = None,
    ) -> None:
        self.llm = llm
        self.store = store
        self.sink = sink
        self.renderer = renderer or PromptRenderer()
        self.chapter_lookup = chapter_lookup
        self.image_generator = image_generator
        self.image_tasks = image_tasks if image_tasks is not None else ImageTaskTracker()
        self.phases = phases if phases is not None else default_phases()
        self.retry = RetryService(store)
        self._trackers: dict[str, ActivationTracker] = {}

    def tracker_for(self, story_id: str, config: PipelineConfig) -> ActivationTracker:
        tracker = self._trackers.get(story_id)
        if tracker is None:
            r = config.retrieval
            tracker = ActivationTracker(r.decay_factor, r.sticky_threshold, r.activation_epsilon)
            self._trackers[story_id] = tracker
        return tracker

    def _env(self, ctx: PipelineContext) -> PhaseEnv:
        return PhaseEnv(
            llm=self.llm,
            store=self.store,
            sink=self.sink,
            renderer=self.renderer,
            tracker=self.tracker_for(ctx.story_id, ctx.config),
            chapter_lookup=self.chapter_lookup,
            image_generator=self.image_generator,
            image_tasks=self.image_tasks,
        )

    async def run(
        self,
        story_id: str,
        user_input: str,
        config: PipelineConfig,
        *,
        cancel: CancelToken | None = None,
    ) -> PipelineContext:
        """Run one turn. Raises UnconfiguredCapabilityError before doing any work."""
        config.require_capabilities()
        ctx = PipelineContext(
            story_id=story_id,
            user_input=user_input,
            config=config,
            cancel=cancel or CancelToken(),
        )
        logger.info("turn start story=%s", story_id)
        return await self._execute(ctx, None, checkpoint_first=True)

    async def resume(self, story_id: str, *, cancel: CancelToken | None = None) -> PipelineContext | None:
        """Continue the checkpointed turn of a story, or return None if there is none."""
        restored = await self.retry.restore(story_id)
        if restored is None:
            return None
        ctx, last_completed = restored
        ctx.config.require_capabilities()
        ctx.cancel = cancel or CancelToken()
        logger.info("resuming story=%s after %s", story_id, last_completed or "start")
        return await self._execute(ctx, last_completed)

    async def discard(self, story_id: str) -> None:
        await self.retry.discard(story_id)

    def _remaining(self, last_completed: PhaseName | None) -> list[Phase]:
        if last_completed is None:
            return list(self.phases)
        names = [p.name for p in self.phases]
        return list(self.phases[names.index(last_completed) + 1:])

    async def _execute(
        self,
        ctx: PipelineContext,
        last_completed: PhaseName | None,
        *,
        checkpoint_first: bool = False,
    ) -> PipelineContext:
        env = self._env(ctx)
        phase_name: str = last_completed or "pre_generation"
        try:
            if checkpoint_first:
                await ctx.cancel.run(self.retry.save(ctx, None))

            for phase in self._remaining(last_completed):
                if not phase.enabled(ctx.config):
                    logger.debug("skipping disabled phase %s", phase.name)
                    continue
                phase_name = phase.name
                ctx.cancel.raise_if_cancelled()
                if phase.name == "narrative":
                    await ctx.cancel.run(self.retry.save(ctx, last_completed))

                ctx.phase = phase.name
                self.sink.emit(events.PhaseStart(ctx.story_id, phase.name))
                ctx = await phase.run(ctx, env)
                ctx.completed_phases.append(phase.name)
                last_completed = phase.name
                self.sink.emit(events.PhaseComplete(ctx.story_id, phase.name))

                if "narrative" in ctx.completed_phases:
                    # completed work is saved even when the token has already fired
                    await self.retry.save(ctx, last_completed)

            ctx.phase = "done"
            await self.retry.discard(ctx.story_id)
        except OperationCancelled:
            logger.info("turn aborted story=%s during %s", ctx.story_id, phase_name)
            self.sink.emit(events.Aborted(ctx.story_id, phase_name, ctx.narrative, context=ctx))
            return ctx
        except Exception as e:
            logger.exception("turn failed story=%s during %s", ctx.story_id, phase_name)
            self.sink.emit(events.Error(ctx.story_id, phase_name, str(e) or type(e).__name__, fatal=True, context=ctx))
            return ctx

        logger.info("turn done story=%s turn=%d", ctx.story_id, ctx.turn_index)
        self.sink.emit(events.Done(ctx.story_id, context=ctx))
        return ctx
