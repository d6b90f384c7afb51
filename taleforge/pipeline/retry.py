"""Durable checkpoints for resuming an interrupted turn.

A checkpoint is the serialised PipelineContext plus the last phase that
finished. It is written when a turn starts, again right before Narrative,
and after every phase from Narrative on; it is deleted when the turn
reaches Done or when the caller discards it. An unreadable checkpoint is
treated as absent and removed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, ValidationError

from taleforge.pipeline.context import PhaseName, PipelineContext
from taleforge.storage import CheckpointCorrupt, Store

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


class RetryCheckpoint(BaseModel):
    version: int = CHECKPOINT_VERSION
    saved_at: str
    last_completed: PhaseName | None = None
    context: PipelineContext


class RetryService:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def save(self, ctx: PipelineContext, last_completed: PhaseName | None) -> None:
        checkpoint = RetryCheckpoint(
            saved_at=datetime.now(timezone.utc).isoformat(),
            last_completed=last_completed,
            context=ctx,
        )
        await self._store.write_checkpoint(ctx.story_id, checkpoint.model_dump(mode="json"))
        logger.info(
            "checkpoint saved story=%s turn=%d last_completed=%s",
            ctx.story_id, ctx.turn_index, last_completed,
        )

    async def load(self, story_id: str) -> RetryCheckpoint | None:
        try:
            data = await self._store.read_checkpoint(story_id)
            if data is None:
                return None
            checkpoint = RetryCheckpoint.model_validate(data)
            if checkpoint.version != CHECKPOINT_VERSION:
                raise CheckpointCorrupt(f"unsupported checkpoint version {checkpoint.version}")
        except (CheckpointCorrupt, ValidationError) as e:
            logger.warning("discarding unreadable checkpoint for story %s: %s", story_id, e)
            await self.discard(story_id)
            return None
        return checkpoint

    async def restore(self, story_id: str) -> tuple[PipelineContext, PhaseName | None] | None:
        """Return (context, last completed phase) from the stored checkpoint, or None."""
        checkpoint = await self.load(story_id)
        if checkpoint is None:
            return None
        logger.info(
            "restored checkpoint story=%s turn=%d last_completed=%s",
            story_id, checkpoint.context.turn_index, checkpoint.last_completed,
        )
        return checkpoint.context, checkpoint.last_completed

    async def discard(self, story_id: str) -> None:
        await self._store.delete_checkpoint(story_id)
        logger.info("checkpoint discarded story=%s", story_id)
