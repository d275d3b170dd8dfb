"""3D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any, Optional

import numpy as np


def descriptor_distance(a: Any, b: Any) -> int:
    """Hamming distance between two binary descriptors stored as bytes."""
    x = np.asarray(a, dtype=np.uint8).ravel()
    y = np.asarray(b, dtype=np.uint8).ravel()
    if x.shape != y.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(x, y)).sum())


def _vector(position: Any) -> np.ndarray:
    return np.array(position, dtype=float).reshape(3)


def _row_copy(data: Any, index: int) -> Optional[np.ndarray]:
    if data is None:
        return None
    return np.array(data[index], copy=True)


class MapPoint:
    """A landmark with its observations, viewing direction and scale range.

    Keyframes are expected to provide ``id``, ``frame_id``, ``u_right``,
    ``keys_un`` (items with ``octave``), ``descriptors``, ``sem_descriptors``,
    ``scale_factors``, ``scale_levels``, ``log_scale_factor``, ``is_bad()``,
    ``get_camera_center()``, ``erase_map_point_match(index)`` and
    ``replace_map_point_match(index, point)``.
    """

    global_lock = threading.RLock()
    _ids = itertools.count()

    def __init__(self, position: Any, reference_keyframe: Any, world_map: Any) -> None:
        self._init_state(world_map)
        self.first_kf_id = reference_keyframe.id
        self.first_frame = reference_keyframe.frame_id
        self._ref_kf = reference_keyframe
        self._world_pos = _vector(position)
        self._normal = np.zeros(3)
        self._assign_id()

    @classmethod
    def from_frame(cls, position: Any, world_map: Any, frame: Any, index: int) -> "MapPoint":
        """Create a point seen in a plain frame at keypoint ``index``."""
        point = cls.__new__(cls)
        point._init_state(world_map)
        point.first_kf_id = -1
        point.first_frame = frame.id
        point._ref_kf = None
        point._world_pos = _vector(position)
        center = _vector(frame.get_camera_center())
        offset = point._world_pos - center
        dist = float(np.linalg.norm(offset))
        point._normal = offset / dist
        level = frame.keys_un[index].octave
        point._max_distance = dist * frame.scale_factors[level]
        point._min_distance = point._max_distance / frame.scale_factors[frame.scale_levels - 1]
        point._descriptor = _row_copy(frame.descriptors, index)
        point._assign_id()
        return point

    def _init_state(self, world_map: Any) -> None:
        self._map = world_map
        self._features_lock = threading.RLock()
        self._pos_lock = threading.RLock()
        self._observations: dict[Any, int] = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: Optional[MapPoint] = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._descriptor: Optional[np.ndarray] = None
        self._sem_descriptor: Optional[np.ndarray] = None
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: Optional[np.ndarray] = None

    def _assign_id(self) -> None:
        with self._map.point_creation_lock:
            self.id = next(MapPoint._ids)

    def set_world_pos(self, position: Any) -> None:
        with MapPoint.global_lock, self._pos_lock:
            self._world_pos = _vector(position)

    def get_world_pos(self) -> np.ndarray:
        with self._pos_lock:
            return self._world_pos.copy()

    def get_normal(self) -> np.ndarray:
        with self._pos_lock:
            return self._normal.copy()

    def get_reference_keyframe(self) -> Any:
        with self._features_lock:
            return self._ref_kf

    def add_observation(self, keyframe: Any, index: int) -> None:
        with self._features_lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe: Any) -> None:
        """Forget one observation; a point left with two or fewer goes bad."""
        bad = False
        with self._features_lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._ref_kf is keyframe:
                    self._ref_kf = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def get_observations(self) -> dict[Any, int]:
        with self._features_lock:
            return dict(self._observations)

    def observations(self) -> int:
        with self._features_lock:
            return self._n_obs

    def set_bad_flag(self) -> None:
        with self._features_lock, self._pos_lock:
            self._bad = True
            obs = self._observations
            self._observations = {}
        for keyframe, index in obs.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def get_replaced(self) -> Optional["MapPoint"]:
        with self._features_lock, self._pos_lock:
            return self._replaced

    def replace(self, point: "MapPoint") -> None:
        """Hand every observation of this point over to ``point``."""
        if point.id == self.id:
            return
        with self._features_lock, self._pos_lock:
            obs = self._observations
            self._observations = {}
            self._bad = True
            visible, found = self._visible, self._found
            self._replaced = point
        for keyframe, index in obs.items():
            if not point.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, point)
                point.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)
        point.increase_found(found)
        point.increase_visible(visible)
        point.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._features_lock, self._pos_lock:
            return self._bad

    def increase_visible(self, n: int = 1) -> None:
        with self._features_lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._features_lock:
            self._found += n

    def get_found_ratio(self) -> float:
        with self._features_lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the rest."""
        with self._features_lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        pairs = [
            (keyframe.descriptors[index], keyframe.sem_descriptors[index])
            for keyframe, index in observations.items()
            if not keyframe.is_bad()
        ]
        if not pairs:
            return

        n = len(pairs)
        distances = np.zeros((n, n), dtype=int)
        for i, j in itertools.combinations(range(n), 2):
            d = descriptor_distance(pairs[i][0], pairs[j][0]) + descriptor_distance(
                pairs[i][1], pairs[j][1]
            )
            distances[i, j] = distances[j, i] = d

        median_pos = (n - 1) // 2
        best_idx = min(range(n), key=lambda i: (int(np.sort(distances[i])[median_pos]), i))

        with self._features_lock:
            self._descriptor = np.array(pairs[best_idx][0], copy=True)
            self._sem_descriptor = np.array(pairs[best_idx][1], copy=True)

    def get_descriptor(self) -> Optional[np.ndarray]:
        with self._features_lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def get_sem_descriptor(self) -> Optional[np.ndarray]:
        with self._features_lock:
            return None if self._sem_descriptor is None else self._sem_descriptor.copy()

    def get_index_in_keyframe(self, keyframe: Any) -> int:
        with self._features_lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe: Any) -> bool:
        with self._features_lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute mean viewing direction and the scale-invariance distances."""
        with self._features_lock, self._pos_lock:
            if self._bad:
                return
            observations = dict(self._observations)
            ref_kf = self._ref_kf
            position = self._world_pos.copy()
        if not observations:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            direction = position - _vector(keyframe.get_camera_center())
            normal += direction / np.linalg.norm(direction)

        dist = float(np.linalg.norm(position - _vector(ref_kf.get_camera_center())))
        level = ref_kf.keys_un[observations.get(ref_kf, 0)].octave
        level_scale = ref_kf.scale_factors[level]
        with self._pos_lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / ref_kf.scale_factors[ref_kf.scale_levels - 1]
            self._normal = normal / len(observations)

    def get_min_distance_invariance(self) -> float:
        with self._pos_lock:
            return 0.8 * self._min_distance

    def get_max_distance_invariance(self) -> float:
        with self._pos_lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame: Any) -> int:
        """Pyramid level at which the point should appear at ``current_dist``."""
        with self._pos_lock:
            max_distance = self._max_distance
        top = frame.scale_levels - 1
        if current_dist == 0:
            return top if max_distance > 0 else 0
        ratio = max_distance / current_dist
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, top))