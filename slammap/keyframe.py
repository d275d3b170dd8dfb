"""Keyframes: posed frames that anchor the covisibility graph and spanning tree."""

from __future__ import annotations

import bisect
import itertools
import math
import numbers
import threading
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np

FRAME_GRID_COLS = 64
FRAME_GRID_ROWS = 48

# Minimum number of shared points for an edge in the covisibility graph.
_COVISIBILITY_THRESHOLD = 15


@dataclass(frozen=True)
class KeyPoint:
    """An image feature location and the pyramid level it was detected at."""

    x: float
    y: float
    octave: int = 0


def _as_list(values: Optional[Sequence[Any]], n: int, fill: Any) -> list[Any]:
    return [fill] * n if values is None else list(values)


class KeyFrame:
    """A frame kept in the map, with its pose, observations and graph links.

    The pose ``tcw`` maps world coordinates to camera coordinates as a 4x4
    homogeneous matrix. ``grid`` is indexed ``grid[column][row]`` and holds the
    indices of undistorted keypoints falling in each cell.
    """

    _ids = itertools.count()

    def __init__(
        self,
        keys: Sequence[KeyPoint] = (),
        *,
        keys_un: Optional[Sequence[KeyPoint]] = None,
        u_right: Optional[Sequence[float]] = None,
        depth: Optional[Sequence[float]] = None,
        descriptors: Any = None,
        sem_descriptors: Any = None,
        frame_id: int = 0,
        timestamp: float = 0.0,
        fx: float = 1.0,
        fy: float = 1.0,
        cx: float = 0.0,
        cy: float = 0.0,
        bf: float = 0.0,
        baseline: float = 0.0,
        th_depth: float = 0.0,
        scale_levels: int = 1,
        scale_factor: float = 1.2,
        scale_factors: Optional[Sequence[float]] = None,
        level_sigma2: Optional[Sequence[float]] = None,
        inv_level_sigma2: Optional[Sequence[float]] = None,
        min_x: float = 0.0,
        min_y: float = 0.0,
        max_x: float = 0.0,
        max_y: float = 0.0,
        grid_element_width_inv: float = 1.0,
        grid_element_height_inv: float = 1.0,
        grid: Optional[Sequence[Sequence[Sequence[int]]]] = None,
        calibration: Any = None,
        map_points: Optional[Sequence[Any]] = None,
        pose: Any = None,
        world_map: Any = None,
        keyframe_db: Any = None,
        vocabulary: Any = None,
        bow_vec: Optional[dict] = None,
        feat_vec: Optional[dict] = None,
        sem_bow_vec: Optional[dict] = None,
        sem_feat_vec: Optional[dict] = None,
    ) -> None:
        self.id = next(KeyFrame._ids)
        self.frame_id = frame_id
        self.timestamp = timestamp

        self.keys = list(keys)
        self.n = len(self.keys)
        self.keys_un = list(keys_un) if keys_un is not None else list(self.keys)
        self.u_right = _as_list(u_right, self.n, -1.0)
        self.depth = _as_list(depth, self.n, -1.0)
        self.descriptors = None if descriptors is None else np.array(descriptors, copy=True)
        self.sem_descriptors = (
            None if sem_descriptors is None else np.array(sem_descriptors, copy=True)
        )

        self.fx, self.fy, self.cx, self.cy = fx, fy, cx, cy
        self.invfx = 1.0 / fx
        self.invfy = 1.0 / fy
        self.bf = bf
        self.baseline = baseline
        self.th_depth = th_depth
        self._half_baseline = baseline / 2
        self.calibration = None if calibration is None else np.array(calibration, dtype=float)

        self.scale_levels = scale_levels
        self.scale_factor = scale_factor
        self.log_scale_factor = math.log(scale_factor)
        self.scale_factors = (
            list(scale_factors)
            if scale_factors is not None
            else [scale_factor**i for i in range(scale_levels)]
        )
        self.level_sigma2 = (
            list(level_sigma2) if level_sigma2 is not None else [s * s for s in self.scale_factors]
        )
        self.inv_level_sigma2 = (
            list(inv_level_sigma2)
            if inv_level_sigma2 is not None
            else [1.0 / s for s in self.level_sigma2]
        )

        self.min_x, self.min_y, self.max_x, self.max_y = min_x, min_y, max_x, max_y
        self.grid_cols = FRAME_GRID_COLS
        self.grid_rows = FRAME_GRID_ROWS
        self.grid_element_width_inv = grid_element_width_inv
        self.grid_element_height_inv = grid_element_height_inv
        if grid is None:
            self._grid = [[[] for _ in range(self.grid_rows)] for _ in range(self.grid_cols)]
        else:
            self._grid = [[list(cell) for cell in column] for column in grid]

        self.vocabulary = vocabulary
        self.bow_vec = dict(bow_vec or {})
        self.feat_vec = dict(feat_vec or {})
        self.sem_bow_vec = dict(sem_bow_vec or {})
        self.sem_feat_vec = dict(sem_feat_vec or {})

        self._map = world_map
        self._keyframe_db = keyframe_db

        # Bookkeeping used by tracking, mapping and loop closing.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: Optional[np.ndarray] = None
        self.tcw_bef_gba: Optional[np.ndarray] = None
        self.tcp: Optional[np.ndarray] = None

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self._map_points = _as_list(map_points, self.n, None)
        self._connected_weights: dict[KeyFrame, int] = {}
        self._ordered_connected: list[KeyFrame] = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: Optional[KeyFrame] = None
        self._children: set[KeyFrame] = set()
        self._loop_edges: set[KeyFrame] = set()
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self.set_pose(np.eye(4) if pose is None else pose)

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id})"

    # Bag of words

    def compute_bow(self) -> None:
        """Fill the bag-of-words vectors from the descriptors if not done yet.

        The vocabulary's ``transform(descriptors, levels_up)`` must return a
        ``(bow_vector, feature_vector)`` pair.
        """
        if self.bow_vec and self.feat_vec:
            return
        if self.vocabulary is None:
            raise ValueError("a vocabulary is required to compute the bag of words")
        rows = [] if self.descriptors is None else list(self.descriptors)
        sem_rows = [] if self.sem_descriptors is None else list(self.sem_descriptors)
        # Features are grouped at the fourth level from the leaves.
        self.bow_vec, self.feat_vec = (dict(v) for v in self.vocabulary.transform(rows, 4))
        self.sem_bow_vec, self.sem_feat_vec = (
            dict(v) for v in self.vocabulary.transform(sem_rows, 4)
        )

    # Pose

    def set_pose(self, tcw: Any) -> None:
        with self._pose_lock:
            self._tcw = np.array(tcw, dtype=float).reshape(4, 4)
            rcw = self._tcw[:3, :3]
            t = self._tcw[:3, 3]
            rwc = rcw.T
            self._ow = -rwc @ t
            self._twc = np.eye(4)
            self._twc[:3, :3] = rwc
            self._twc[:3, 3] = self._ow
            center = np.array([self._half_baseline, 0.0, 0.0, 1.0])
            self._cw = (self._twc @ center)[:3]

    def get_pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def get_pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def get_camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def get_stereo_center(self) -> np.ndarray:
        """World position of the point midway between the stereo cameras."""
        with self._pose_lock:
            return self._cw.copy()

    def get_rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def get_translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe: "KeyFrame", weight: int) -> None:
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    @staticmethod
    def _ordered(pairs: list[tuple[int, "KeyFrame"]]) -> tuple[list["KeyFrame"], list[int]]:
        pairs = sorted(pairs, key=lambda p: (p[0], p[1].id), reverse=True)
        return [kf for _, kf in pairs], [w for w, _ in pairs]

    def update_best_covisibles(self) -> None:
        """Reorder connected keyframes by decreasing weight."""
        with self._connections_lock:
            pairs = [(w, kf) for kf, w in self._connected_weights.items()]
            self._ordered_connected, self._ordered_weights = self._ordered(pairs)

    def get_connected_keyframes(self) -> set["KeyFrame"]:
        with self._connections_lock:
            return set(self._connected_weights)

    def get_vector_covisible_keyframes(self) -> list["KeyFrame"]:
        with self._connections_lock:
            return list(self._ordered_connected)

    def get_best_covisibility_keyframes(self, n: int) -> list["KeyFrame"]:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def get_covisibles_by_weight(self, weight: int) -> list["KeyFrame"]:
        """Ordered keyframes with weight at least ``weight``.

        When every connection qualifies the boundary search finds nothing and
        the result is empty.
        """
        with self._connections_lock:
            if not self._ordered_connected:
                return []
            negated = [-w for w in self._ordered_weights]
            n = bisect.bisect_right(negated, -weight)
            if n == len(negated):
                return []
            return list(self._ordered_connected[:n])

    def get_weight(self, keyframe: "KeyFrame") -> int:
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    # Map point associations

    def add_map_point(self, point: Any, index: int) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index_or_point: Any) -> None:
        """Drop an association, given by keypoint index or by map point."""
        if isinstance(index_or_point, numbers.Integral):
            with self._features_lock:
                self._map_points[int(index_or_point)] = None
            return
        index = index_or_point.get_index_in_keyframe(self)
        if index >= 0:
            self._map_points[index] = None

    def replace_map_point_match(self, index: int, point: Any) -> None:
        self._map_points[index] = point

    def get_map_points(self) -> set[Any]:
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def tracked_map_points(self, min_obs: int) -> int:
        """Count good points, only those with ``min_obs`` observations if positive."""
        with self._features_lock:
            points = [p for p in self._map_points[: self.n] if p is not None and not p.is_bad()]
            if min_obs > 0:
                return sum(1 for p in points if p.observations() >= min_obs)
            return len(points)

    def get_map_point_matches(self) -> list[Any]:
        with self._features_lock:
            return list(self._map_points)

    def get_map_point(self, index: int) -> Any:
        with self._features_lock:
            return self._map_points[index]

    def update_connections(self) -> None:
        """Rebuild covisibility links from the keyframes sharing map points."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict[KeyFrame, int] = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.get_observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        nmax = 0
        kf_max: Optional[KeyFrame] = None
        pairs: list[tuple[int, KeyFrame]] = []
        for keyframe, count in counter.items():
            if count > nmax:
                nmax, kf_max = count, keyframe
            if count >= _COVISIBILITY_THRESHOLD:
                pairs.append((count, keyframe))
                keyframe.add_connection(self, count)

        if not pairs and kf_max is not None:
            pairs.append((nmax, kf_max))
            kf_max.add_connection(self, nmax)

        ordered, weights = self._ordered(pairs)
        with self._connections_lock:
            self._connected_weights = counter
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree

    def add_child(self, keyframe: "KeyFrame") -> None:
        with self._connections_lock:
            self._children.add(keyframe)

    def erase_child(self, keyframe: "KeyFrame") -> None:
        with self._connections_lock:
            self._children.discard(keyframe)

    def change_parent(self, keyframe: "KeyFrame") -> None:
        with self._connections_lock:
            self._parent = keyframe
            keyframe.add_child(self)

    def get_children(self) -> set["KeyFrame"]:
        with self._connections_lock:
            return set(self._children)

    def get_parent(self) -> Optional["KeyFrame"]:
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe: "KeyFrame") -> bool:
        with self._connections_lock:
            return keyframe in self._children

    # Loop edges and erasure

    def add_loop_edge(self, keyframe: "KeyFrame") -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges.add(keyframe)

    def get_loop_edges(self) -> set["KeyFrame"]:
        with self._connections_lock:
            return set(self._loop_edges)

    def set_not_erase(self) -> None:
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Allow erasure again unless loop edges pin the keyframe."""
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, reattaching its children."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return

        for keyframe in list(self._connected_weights):
            keyframe.erase_connection(self)
        for point in list(self._map_points):
            if point is not None:
                point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights.clear()
            self._ordered_connected = []
            self._ordered_weights = []

            parent = self._parent
            candidates: set[KeyFrame] = {parent} if parent is not None else set()
            candidate_ids = {kf.id for kf in candidates}

            # Each round attaches the child with the strongest link to a candidate.
            while self._children:
                best: Optional[tuple[KeyFrame, KeyFrame]] = None
                best_weight = -1
                for child in self._children:
                    if child.is_bad():
                        continue
                    for connected in child.get_vector_covisible_keyframes():
                        if connected.id in candidate_ids:
                            w = child.get_weight(connected)
                            if w > best_weight:
                                best, best_weight = (child, connected), w
                if best is None:
                    break
                child, new_parent = best
                child.change_parent(new_parent)
                candidates.add(child)
                candidate_ids.add(child.id)
                self._children.discard(child)

            if parent is not None:
                for child in list(self._children):
                    child.change_parent(parent)
                parent.erase_child(self)
                self.tcp = self._tcw @ parent.get_pose_inverse()
            self._bad = True

        if self._map is not None:
            self._map.erase_keyframe(self)
        if self._keyframe_db is not None:
            self._keyframe_db.erase(self)

    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def erase_connection(self, keyframe: "KeyFrame") -> None:
        with self._connections_lock:
            removed = self._connected_weights.pop(keyframe, None) is not None
        if removed:
            self.update_best_covisibles()

    # Geometry

    def get_features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of undistorted keypoints strictly within ``r`` of ``(x, y)`` on each axis."""
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return []
        max_cell_x = min(
            self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv)
        )
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return []
        max_cell_y = min(
            self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv)
        )
        if max_cell_y < 0:
            return []

        indices = []
        for ix in range(min_cell_x, max_cell_x + 1):
            for iy in range(min_cell_y, max_cell_y + 1):
                for idx in self._grid[ix][iy]:
                    kp = self.keys_un[idx]
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        indices.append(idx)
        return indices

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, i: int) -> Optional[np.ndarray]:
        """World position of keypoint ``i`` from its depth, or None without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        kp = self.keys[i]
        x3dc = np.array([(kp.x - self.cx) * z * self.invfx, (kp.y - self.cy) * z * self.invfy, z])
        with self._pose_lock:
            return self._twc[:3, :3] @ x3dc + self._twc[:3, 3]

    def compute_scene_median_depth(self, q: int) -> float:
        """Depth at position ``(count - 1) // q`` of the sorted point depths."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(row @ p.get_world_pos() + zcw) for p in points[: self.n] if p is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]