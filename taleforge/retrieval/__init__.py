"""Tiered lorebook retrieval.

activation  ActivationTracker — decaying per-entry stickiness
scoring     Scorer — entry/turn relevance distance
engine      EntryRetrievalEngine — Tier 1/2/3 selection
context     ContextBuilder — live facts + entries under a size budget
"""

from taleforge.retrieval.activation import ActivationTracker
from taleforge.retrieval.context import ContextBuilder, ContextBundle
from taleforge.retrieval.engine import (
    EntryRetrievalEngine,
    RetrievalResult,
    RetrievalTier,
    RetrievedEntry,
)
from taleforge.retrieval.scoring import Scorer

__all__ = [
    "ActivationTracker",
    "ContextBuilder",
    "ContextBundle",
    "EntryRetrievalEngine",
    "RetrievalResult",
    "RetrievalTier",
    "RetrievedEntry",
    "Scorer",
]
