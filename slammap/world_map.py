"""Container for the keyframes and map points that make up a reconstruction."""

from __future__ import annotations

import threading
from typing import Any, Iterable


class Map:
    """Thread-safe registry of keyframes and map points.

    Keyframes must expose an integer ``id`` attribute. Insertion order is kept,
    so listings come back in the order objects were added.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._map_points: dict[Any, None] = {}
        self._keyframes: dict[Any, None] = {}
        self._reference_map_points: list[Any] = []
        self._max_kf_id = 0
        self._big_change_idx = 0
        self.keyframe_origins: list[Any] = []
        self.map_update_lock = threading.RLock()
        # Keeps point ids unique when points are created from several threads.
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe: Any) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_kf_id:
                self._max_kf_id = keyframe.id

    def add_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe: Any) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points: Iterable[Any]) -> None:
        with self._lock:
            self._reference_map_points = list(points)

    def inform_new_big_change(self) -> None:
        """Record a large change such as a loop closure or a global adjustment."""
        with self._lock:
            self._big_change_idx += 1

    def get_last_big_change_idx(self) -> int:
        with self._lock:
            return self._big_change_idx

    def get_all_keyframes(self) -> list[Any]:
        with self._lock:
            return list(self._keyframes)

    def get_all_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._map_points)

    def get_reference_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._reference_map_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def get_max_kf_id(self) -> int:
        with self._lock:
            return self._max_kf_id

    def clear(self) -> None:
        """Drop every keyframe, map point and origin; the change index is kept."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_kf_id = 0
            self._reference_map_points = []
            self.keyframe_origins.clear()