"""Relevance distance between a lorebook entry and the current turn.

Distance is in [0, 1]: 0 is an exact hit, 1 is unrelated. The scorer only
measures; tier assignment is the engine's job.

Matching ladder, first hit wins:

    always-mode entry                           0.0
    name or alias in the user input             0.05
    keyword in the user input                   0.1
    name, alias or keyword in recent story      0.3
    token overlap (relevance-ranked only)       1 - 0.6 * overlap
    nothing                                     1.0
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from taleforge.models import KnowledgeEntry, StoryEntry

ALWAYS_DISTANCE = 0.0
NAME_DISTANCE = 0.05
KEYWORD_DISTANCE = 0.1
RECENT_DISTANCE = 0.3
NO_MATCH_DISTANCE = 1.0

OVERLAP_WEIGHT = 0.6
OVERLAP_SATURATION = 5  # shared tokens needed for full overlap credit

_TOKEN_RE = re.compile(r"[a-z0-9']+")

_STOPWORDS = frozenset("""
a an and are as at be but by for from has have he her his i in into is it its
me my no not of on or our she so that the their them then there they this to
up was we were what when where which who will with you your
""".split())


def text_matches(term: str, content: str) -> bool:
    """True when `term` occurs in `content` (already lower-cased).

    Terms shorter than two characters never match.
    """
    normalized = term.strip().lower()
    if len(normalized) < 2:
        return False
    if normalized in content:
        return True
    return re.search(rf"\b{re.escape(normalized)}\b", content, re.IGNORECASE) is not None


def tokenize(text: str) -> set[str]:
    return {
        t for t in _TOKEN_RE.findall(text.lower())
        if len(t) > 2 and t not in _STOPWORDS
    }


@dataclass(frozen=True)
class Match:
    distance: float
    reason: str


def _any_matches(terms: Iterable[str], content: str) -> bool:
    return any(text_matches(t, content) for t in terms)


class Scorer:
    def __init__(self, recent_window: int = 5) -> None:
        self.recent_window = recent_window

    def _recent_text(self, recent_entries: Sequence[StoryEntry]) -> str:
        if self.recent_window <= 0:
            return ""
        window = recent_entries[-self.recent_window:]
        return "\n".join(e.content for e in window).lower()

    def match(
        self,
        entry: KnowledgeEntry,
        turn_text: str,
        recent_entries: Sequence[StoryEntry] = (),
    ) -> Match:
        if entry.mode == "always":
            return Match(ALWAYS_DISTANCE, "always")

        user = turn_text.lower()
        names = [entry.name, *entry.aliases]
        if _any_matches(names, user):
            return Match(NAME_DISTANCE, "name")
        if _any_matches(entry.keywords, user):
            return Match(KEYWORD_DISTANCE, "keyword")

        recent = self._recent_text(recent_entries)
        if recent and _any_matches([*names, *entry.keywords], recent):
            return Match(RECENT_DISTANCE, "recent")

        if entry.mode == "relevance-ranked":
            entry_tokens = tokenize(" ".join([*names, *entry.keywords, entry.description]))
            shared = entry_tokens & tokenize(f"{user}\n{recent}")
            if shared:
                overlap = min(1.0, len(shared) / OVERLAP_SATURATION)
                return Match(round(1.0 - OVERLAP_WEIGHT * overlap, 6), "overlap")

        return Match(NO_MATCH_DISTANCE, "none")

    def score(
        self,
        entry: KnowledgeEntry,
        turn_text: str,
        recent_entries: Sequence[StoryEntry] = (),
    ) -> float:
        return self.match(entry, turn_text, recent_entries).distance
