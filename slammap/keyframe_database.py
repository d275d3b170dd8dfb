"""Inverted index from visual words to keyframes, used for place recognition."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Iterable

# Candidates must share more than this fraction of the best word count.
_COMMON_WORDS_RATIO = 0.8
# Candidates are kept when their accumulated score exceeds this fraction of the best.
_RETAIN_RATIO = 0.75
# Number of covisible neighbours whose scores are accumulated.
_NEIGHBOURS = 10


def _unique(keyframes: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    result = []
    for keyframe in keyframes:
        if keyframe not in seen:
            seen.add(keyframe)
            result.append(keyframe)
    return result


class KeyFrameDatabase:
    """Keyframes indexed by the visual words of their bag-of-words vectors.

    The vocabulary must provide ``score(bow_a, bow_b)``. Bag-of-words vectors
    are mappings from word id to weight.
    """

    def __init__(self, vocabulary: Any) -> None:
        self._vocabulary = vocabulary
        self._inverted_file: defaultdict[Any, list[Any]] = defaultdict(list)
        self._lock = threading.Lock()

    def add(self, keyframe: Any) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                self._inverted_file[word].append(keyframe)

    def erase(self, keyframe: Any) -> None:
        """Remove one entry of ``keyframe`` from the list of each of its words."""
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._inverted_file.get(word)
                if entries and keyframe in entries:
                    entries.remove(keyframe)

    def clear(self) -> None:
        with self._lock:
            self._inverted_file = defaultdict(list)

    def _entries(self, word: Any) -> list[Any]:
        return self._inverted_file.get(word, [])

    def detect_loop_candidates(self, keyframe: Any, min_score: float) -> list[Any]:
        """Keyframes that may close a loop with ``keyframe``.

        Keyframes connected to ``keyframe`` in the covisibility graph are left
        out, as are those scoring below ``min_score``.
        """
        connected = keyframe.get_connected_keyframes()
        sharing: list[Any] = []
        with self._lock:
            for word in keyframe.bow_vec:
                for other in self._entries(word):
                    if other.loop_query != keyframe.id:
                        other.loop_words = 0
                        if other not in connected:
                            other.loop_query = keyframe.id
                            sharing.append(other)
                    other.loop_words += 1

        if not sharing:
            return []

        max_common = max(other.loop_words for other in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, other.bow_vec)
                other.loop_score = score
                if score >= min_score:
                    scored.append((score, other))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = min_score
        for score, other in scored:
            best_score = acc_score = score
            best_kf = other
            for neighbour in other.get_best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.loop_query == keyframe.id and neighbour.loop_words > min_common:
                    acc_score += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_kf, best_score = neighbour, neighbour.loop_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        threshold = _RETAIN_RATIO * best_acc
        return _unique(kf for acc, kf in accumulated if acc > threshold)

    def detect_relocalization_candidates(self, frame: Any) -> list[Any]:
        """Keyframes that look like ``frame``, for recovering a lost camera."""
        sharing: list[Any] = []
        with self._lock:
            for word in frame.bow_vec:
                for other in self._entries(word):
                    if other.reloc_query != frame.id:
                        other.reloc_words = 0
                        other.reloc_query = frame.id
                        sharing.append(other)
                    other.reloc_words += 1

        if not sharing:
            return []

        max_common = max(other.reloc_words for other in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, other.bow_vec)
                other.reloc_score = score
                scored.append((score, other))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = 0.0
        for score, other in scored:
            best_score = acc_score = score
            best_kf = other
            for neighbour in other.get_best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.reloc_query != frame.id:
                    continue
                acc_score += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_kf, best_score = neighbour, neighbour.reloc_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        threshold = _RETAIN_RATIO * best_acc
        return _unique(kf for acc, kf in accumulated if acc > threshold)