"""Two-view geometry used when triangulating new map points."""

from __future__ import annotations

from typing import Any, Optional

import numpy as np


def skew_symmetric_matrix(v: Any) -> np.ndarray:
    """Matrix ``S`` with ``S @ w == cross(v, w)`` for any 3-vector ``w``."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def fundamental_matrix(keyframe1: Any, keyframe2: Any) -> np.ndarray:
    """Fundamental matrix ``F12`` with ``x1.T @ F12 @ x2 == 0`` for matching pixels.

    Both keyframes need a 3x3 ``calibration`` matrix and world-to-camera poses.
    """
    k1 = keyframe1.calibration
    k2 = keyframe2.calibration
    if k1 is None or k2 is None:
        raise ValueError("both keyframes need a calibration matrix")
    r1w = np.asarray(keyframe1.get_rotation(), dtype=float)
    t1w = np.asarray(keyframe1.get_translation(), dtype=float).reshape(3)
    r2w = np.asarray(keyframe2.get_rotation(), dtype=float)
    t2w = np.asarray(keyframe2.get_translation(), dtype=float).reshape(3)

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w

    k1 = np.asarray(k1, dtype=float)
    k2 = np.asarray(k2, dtype=float)
    return np.linalg.inv(k1).T @ skew_symmetric_matrix(t12) @ r12 @ np.linalg.inv(k2)


def _projection(tcw: Any) -> np.ndarray:
    matrix = np.asarray(tcw, dtype=float)
    if matrix.shape not in ((3, 4), (4, 4)):
        raise ValueError("camera pose must be a 3x4 or 4x4 matrix")
    return matrix[:3]


def triangulate_linear(xn1: Any, xn2: Any, tcw1: Any, tcw2: Any) -> Optional[np.ndarray]:
    """Triangulate a point from normalised image coordinates in two views.

    ``xn1`` and ``xn2`` give ``(x, y)`` on the normalised image plane (a third
    component is ignored); ``tcw1`` and ``tcw2`` are world-to-camera poses.
    Returns the world point, or None when it lies at infinity.
    """
    p1 = _projection(tcw1)
    p2 = _projection(tcw2)
    u1, v1 = np.asarray(xn1, dtype=float).ravel()[:2]
    u2, v2 = np.asarray(xn2, dtype=float).ravel()[:2]
    a = np.vstack(
        [
            u1 * p1[2] - p1[0],
            v1 * p1[2] - p1[1],
            u2 * p2[2] - p2[0],
            v2 * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a)
    homogeneous = vt[3]
    if homogeneous[3] == 0:
        return None
    return homogeneous[:3] / homogeneous[3]