"""Typed events emitted by the generation pipeline.

The pipeline knows nothing about how events are shown; it hands each one to
an EventSink. ImageReady / ImageFailed arrive out-of-band, possibly after
Done, from detached image tasks.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, TypeVar, Union

from taleforge.models import ClassificationResult

if TYPE_CHECKING:
    from taleforge.pipeline.context import PipelineContext


@dataclass(frozen=True)
class PhaseStart:
    story_id: str
    phase: str


@dataclass(frozen=True)
class PhaseComplete:
    story_id: str
    phase: str


@dataclass(frozen=True)
class NarrativeChunk:
    story_id: str
    text: str


@dataclass(frozen=True)
class ClassificationComplete:
    story_id: str
    delta: ClassificationResult


@dataclass(frozen=True)
class Error:
    """A phase failed. fatal=False means the phase degraded and the turn went on."""

    story_id: str
    phase: str
    cause: str
    fatal: bool = True
    context: PipelineContext | None = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class Aborted:
    story_id: str
    phase: str
    partial_text: str
    context: PipelineContext | None = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class Done:
    story_id: str
    context: PipelineContext | None = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class ImageReady:
    story_id: str
    image_id: str
    base64: str = field(repr=False)
    revised_prompt: str | None = None


@dataclass(frozen=True)
class ImageFailed:
    story_id: str
    image_id: str
    cause: str


Event = Union[
    PhaseStart, PhaseComplete, NarrativeChunk, ClassificationComplete,
    Error, Aborted, Done, ImageReady, ImageFailed,
]

E = TypeVar("E")


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class EventLog:
    """Collects events in order. Handy for tests and for replaying a turn."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, cls: type[E]) -> list[E]:
        return [e for e in self.events if isinstance(e, cls)]

    def names(self) -> list[str]:
        return [type(e).__name__ for e in self.events]


class QueueSink:
    """Forwards events to an asyncio.Queue for a consumer task."""

    def __init__(self, queue: asyncio.Queue | None = None) -> None:
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    def emit(self, event: Event) -> None:
        self.queue.put_nowait(event)
