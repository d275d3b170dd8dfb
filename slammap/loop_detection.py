"""Loop candidate consistency: a loop must be seen in consecutive keyframes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

# Consecutive consistent detections needed before a candidate is accepted.
COVISIBILITY_CONSISTENCY_THRESHOLD = 3


def min_covisible_score(keyframe: Any, vocabulary: Any) -> float:
    """Lowest bag-of-words score between ``keyframe`` and its good covisible keyframes.

    Starts at 1.0, so a keyframe without covisible neighbours yields 1.0.
    """
    min_score = 1.0
    for other in keyframe.get_vector_covisible_keyframes():
        if other.is_bad():
            continue
        score = vocabulary.score(keyframe.bow_vec, other.bow_vec)
        if score < min_score:
            min_score = score
    return min_score


@dataclass(frozen=True)
class ConsistentGroup:
    """A candidate with its covisible keyframes, and how many times in a row
    such a group has been detected."""

    keyframes: frozenset
    consistency: int


class ConsistencyTracker:
    """Tracks covisibility groups of loop candidates across successive queries."""

    def __init__(self, threshold: int = COVISIBILITY_CONSISTENCY_THRESHOLD) -> None:
        self.threshold = threshold
        self._groups: list[ConsistentGroup] = []

    @property
    def groups(self) -> list[ConsistentGroup]:
        return list(self._groups)

    def update(self, candidates: Iterable[Any]) -> list[Any]:
        """Match the new candidates against the previous groups.

        Each candidate's group (itself and its connected keyframes) is
        consistent with a previous group when they share a keyframe. A
        previous group is carried forward at most once. Returns candidates
        whose consistency reached the threshold, each listed once.
        """
        previous = self._groups
        used = [False] * len(previous)
        current: list[ConsistentGroup] = []
        enough: list[Any] = []

        for candidate in candidates:
            group = frozenset(candidate.get_connected_keyframes()) | {candidate}
            enough_consistent = False
            consistent_for_some = False
            for i, old in enumerate(previous):
                if group.isdisjoint(old.keyframes):
                    continue
                consistent_for_some = True
                consistency = old.consistency + 1
                if not used[i]:
                    current.append(ConsistentGroup(group, consistency))
                    used[i] = True
                if consistency >= self.threshold and not enough_consistent:
                    enough.append(candidate)
                    enough_consistent = True
            if not consistent_for_some:
                current.append(ConsistentGroup(group, 0))

        self._groups = current
        return enough

    def clear(self) -> None:
        self._groups = []