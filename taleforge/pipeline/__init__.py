"""Turn generation pipeline.

Executes one story turn for one user input:
  1. PreGeneration — load world state and the recent story window, number the turn.
  2. Retrieval — tiered lorebook selection, then the context bundle
     (live world facts + entries + chapter recall) under the size budget.
  3. Narrative — stream the continuation; chunks go out as NarrativeChunk
     events; user action + narration are appended to the story log.
  4. Classification — structured world-state delta, applied to the store.
  5. Translation (optional) — narration into the target language.
  6. Image (optional, agentic mode) — scene identification, detached generation.
  7. PostGeneration — suggestions or action choices.

Services (each resolved once per turn from settings into a ServiceConfig):
  narrative        — streamed story text
  classification   — world-state extraction
  entry_retrieval  — Tier-3 lorebook reranking (optional)
  translation      — narration / suggestion translation
  image_analysis   — scene identification for images
  suggestions      — suggestions and action choices

A RetryCheckpoint is stored while a turn is in flight; GenerationPipeline.resume()
picks up after the last completed phase.
"""

from taleforge.pipeline.core import GenerationPipeline  # noqa: F401
from taleforge.pipeline.context import PHASE_ORDER, PipelineContext  # noqa: F401
from taleforge.pipeline.events import EventLog, EventSink, QueueSink  # noqa: F401
from taleforge.pipeline.retry import RetryCheckpoint, RetryService  # noqa: F401
