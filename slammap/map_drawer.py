"""Geometry for displaying the map: points, keyframe frustums and graph edges."""

from __future__ import annotations

import threading
from typing import Any, Mapping, Optional

import numpy as np

# Weight a covisibility link needs to be shown in the graph.
_GRAPH_MIN_WEIGHT = 100


def frustum_segments(size: float) -> np.ndarray:
    """Line segments of a camera frustum of width ``size`` in camera coordinates.

    Returns an array of shape (8, 2, 3): four edges from the optical centre
    and the four sides of the image rectangle.
    """
    w = size
    h = w * 0.75
    z = w * 0.6
    origin = (0.0, 0.0, 0.0)
    corners = {
        "tr": (w, h, z),
        "br": (w, -h, z),
        "bl": (-w, -h, z),
        "tl": (-w, h, z),
    }
    segments = [
        (origin, corners["tr"]),
        (origin, corners["br"]),
        (origin, corners["bl"]),
        (origin, corners["tl"]),
        (corners["tr"], corners["br"]),
        (corners["tl"], corners["bl"]),
        (corners["tl"], corners["tr"]),
        (corners["bl"], corners["br"]),
    ]
    return np.array(segments, dtype=float)


def _transform(segments: np.ndarray, twc: np.ndarray) -> np.ndarray:
    return segments @ twc[:3, :3].T + twc[:3, 3]


def _position(value: Any) -> np.ndarray:
    return np.array(value, dtype=float).reshape(3)


class MapDrawer:
    """Builds display geometry for a map.

    ``settings`` is a mapping with the keys ``Viewer.KeyFrameSize``,
    ``Viewer.KeyFrameLineWidth``, ``Viewer.GraphLineWidth``,
    ``Viewer.PointSize``, ``Viewer.CameraSize`` and ``Viewer.CameraLineWidth``;
    missing keys read as zero.
    """

    def __init__(self, world_map: Any, settings: Mapping[str, float]) -> None:
        self.world_map = world_map
        self.keyframe_size = float(settings.get("Viewer.KeyFrameSize", 0.0))
        self.keyframe_line_width = float(settings.get("Viewer.KeyFrameLineWidth", 0.0))
        self.graph_line_width = float(settings.get("Viewer.GraphLineWidth", 0.0))
        self.point_size = float(settings.get("Viewer.PointSize", 0.0))
        self.camera_size = float(settings.get("Viewer.CameraSize", 0.0))
        self.camera_line_width = float(settings.get("Viewer.CameraLineWidth", 0.0))
        self._camera_pose: Optional[np.ndarray] = None
        self._camera_lock = threading.Lock()

    def map_point_vertices(self) -> tuple[np.ndarray, np.ndarray]:
        """Positions of good map points, split into (others, reference points).

        Both arrays have shape (n, 3). Nothing is returned for an empty map.
        """
        points = self.world_map.get_all_map_points()
        empty = np.zeros((0, 3))
        if not points:
            return empty, empty
        references = list(dict.fromkeys(self.world_map.get_reference_map_points()))
        reference_set = set(references)

        others = [
            _position(p.get_world_pos())
            for p in points
            if not p.is_bad() and p not in reference_set
        ]
        refs = [_position(p.get_world_pos()) for p in references if not p.is_bad()]
        return (
            np.array(others).reshape(-1, 3) if others else empty,
            np.array(refs).reshape(-1, 3) if refs else empty,
        )

    def keyframe_frustums(self) -> list[np.ndarray]:
        """World-space frustum segments for every keyframe in the map."""
        base = frustum_segments(self.keyframe_size)
        return [
            _transform(base, np.asarray(kf.get_pose_inverse(), dtype=float))
            for kf in self.world_map.get_all_keyframes()
        ]

    def graph_segments(self) -> list[tuple[np.ndarray, np.ndarray]]:
        """Segments joining camera centres along strong covisibility links,
        the spanning tree and loop edges."""
        segments: list[tuple[np.ndarray, np.ndarray]] = []
        for kf in self.world_map.get_all_keyframes():
            center = _position(kf.get_camera_center())
            for other in kf.get_covisibles_by_weight(_GRAPH_MIN_WEIGHT):
                if other.id < kf.id:
                    continue
                segments.append((center, _position(other.get_camera_center())))
            parent = kf.get_parent()
            if parent is not None:
                segments.append((center, _position(parent.get_camera_center())))
            for other in sorted(kf.get_loop_edges(), key=lambda k: k.id):
                if other.id < kf.id:
                    continue
                segments.append((center, _position(other.get_camera_center())))
        return segments

    def current_camera_segments(self, twc: Any) -> np.ndarray:
        """Frustum of the current camera placed by the 4x4 camera-to-world ``twc``."""
        return _transform(frustum_segments(self.camera_size), np.asarray(twc, dtype=float))

    def set_current_camera_pose(self, tcw: Any) -> None:
        with self._camera_lock:
            self._camera_pose = np.array(tcw, dtype=float).reshape(4, 4)

    def get_current_opengl_camera_matrix(self) -> np.ndarray:
        """Camera-to-world transform of the current pose, identity when unset.

        ``matrix.T.ravel()`` gives the column-major layout OpenGL expects.
        """
        with self._camera_lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        if pose is None:
            return np.eye(4)
        rwc = pose[:3, :3].T
        twc = -rwc @ pose[:3, 3]
        matrix = np.eye(4)
        matrix[:3, :3] = rwc
        matrix[:3, 3] = twc
        return matrix