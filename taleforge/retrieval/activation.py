"""Per-entry recency signal for lorebook retrieval.

An entry that was in scene keeps some "stickiness" for a few turns after it
stops matching, so it fades out of context instead of vanishing the moment
the conversation drifts. Stickiness is recomputed from the value recorded at
activation, so decaying twice to the same turn gives the same result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = 0.05


@dataclass
class ActivationState:
    last_activated_turn: int
    stickiness: float = 1.0
    peak: float = 1.0
    active: bool = True


class ActivationTracker:
    """Soft, in-memory activation state for one story. Never persisted."""

    def __init__(
        self,
        decay_factor: float = 0.9,
        sticky_threshold: float = 0.3,
        epsilon: float = DEFAULT_EPSILON,
    ) -> None:
        self.decay_factor = decay_factor
        self.sticky_threshold = sticky_threshold
        self.epsilon = epsilon
        self._states: dict[str, ActivationState] = {}

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def activate(self, entry_id: str, turn_index: int) -> None:
        self._states[entry_id] = ActivationState(last_activated_turn=turn_index)

    def decay(self, entry_id: str, current_turn_index: int, decay_factor: float | None = None) -> float:
        """Recompute stickiness for one entry and return it (0.0 once dropped)."""
        state = self._states.get(entry_id)
        if state is None:
            return 0.0
        factor = self.decay_factor if decay_factor is None else decay_factor
        elapsed = max(0, current_turn_index - state.last_activated_turn)
        stickiness = max(0.0, min(1.0, state.peak * factor ** elapsed))
        if stickiness < self.epsilon:
            del self._states[entry_id]
            return 0.0
        state.stickiness = stickiness
        state.active = elapsed == 0
        return stickiness

    def decay_all(self, current_turn_index: int, decay_factor: float | None = None) -> None:
        before = len(self._states)
        for entry_id in list(self._states):
            self.decay(entry_id, current_turn_index, decay_factor)
        dropped = before - len(self._states)
        if dropped:
            logger.debug("activation tracker dropped %d faded entr%s", dropped, "y" if dropped == 1 else "ies")

    def stickiness(self, entry_id: str) -> float:
        state = self._states.get(entry_id)
        return state.stickiness if state else 0.0

    def is_sticky(self, entry_id: str) -> bool:
        return self.stickiness(entry_id) > self.sticky_threshold

    def last_activated(self, entry_id: str) -> int | None:
        state = self._states.get(entry_id)
        return state.last_activated_turn if state else None

    def snapshot(self) -> dict[str, ActivationState]:
        """Copy of the current states, keyed by entry id."""
        return {
            k: ActivationState(s.last_activated_turn, s.stickiness, s.peak, s.active)
            for k, s in self._states.items()
        }
