"""Creation of new map points by triangulating matches between two keyframes."""

from __future__ import annotations

import math
from typing import Any, Iterable, Optional

import numpy as np

from slammap.map_point import MapPoint
from slammap.mapping_geometry import triangulate_linear

# Chi-square bounds (95%) on the reprojection error, in units of level variance.
_CHI2_MONO = 5.991
_CHI2_STEREO = 7.8
# Rays closer than this cosine are too parallel to triangulate without stereo.
_MAX_COS_PARALLAX = 0.9998
# Tolerance on the distance ratio, as a multiple of the pyramid scale factor.
_SCALE_RATIO_FACTOR = 1.5


def _normalised(keyframe: Any, keypoint: Any) -> np.ndarray:
    return np.array(
        [
            (keypoint.x - keyframe.cx) * keyframe.invfx,
            (keypoint.y - keyframe.cy) * keyframe.invfy,
            1.0,
        ]
    )


def _pose_3x4(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    return np.hstack([rotation, translation.reshape(3, 1)])


def _reprojection_ok(
    keyframe: Any,
    keypoint: Any,
    u_right: float,
    point_camera: np.ndarray,
    bf: float,
    sigma2: float,
) -> bool:
    x, y, z = point_camera
    invz = 1.0 / z
    u = keyframe.fx * x * invz + keyframe.cx
    v = keyframe.fy * y * invz + keyframe.cy
    error = (u - keypoint.x) ** 2 + (v - keypoint.y) ** 2
    if u_right < 0:
        return error <= _CHI2_MONO * sigma2
    u_r = u - bf * invz
    error += (u_r - u_right) ** 2
    return error <= _CHI2_STEREO * sigma2


def triangulate_match(
    keyframe1: Any, keyframe2: Any, index1: int, index2: int
) -> Optional[np.ndarray]:
    """World position for keypoint ``index1`` of ``keyframe1`` matched to
    ``index2`` of ``keyframe2``, or None when the match fails a check.

    Rays with enough parallax are triangulated linearly; otherwise a stereo
    measurement, if any, is unprojected. The point must lie in front of both
    cameras, reproject within the chi-square bound in each view and have a
    distance ratio consistent with the pyramid levels it was detected at.
    """
    kp1 = keyframe1.keys_un[index1]
    kp2 = keyframe2.keys_un[index2]
    ur1 = keyframe1.u_right[index1]
    ur2 = keyframe2.u_right[index2]
    stereo1 = ur1 >= 0
    stereo2 = ur2 >= 0

    rcw1 = np.asarray(keyframe1.get_rotation(), dtype=float)
    tcw1 = np.asarray(keyframe1.get_translation(), dtype=float).reshape(3)
    rcw2 = np.asarray(keyframe2.get_rotation(), dtype=float)
    tcw2 = np.asarray(keyframe2.get_translation(), dtype=float).reshape(3)

    xn1 = _normalised(keyframe1, kp1)
    xn2 = _normalised(keyframe2, kp2)
    ray1 = rcw1.T @ xn1
    ray2 = rcw2.T @ xn2
    cos_rays = float(ray1 @ ray2 / (np.linalg.norm(ray1) * np.linalg.norm(ray2)))

    cos_stereo1 = cos_stereo2 = cos_rays + 1
    if stereo1:
        cos_stereo1 = math.cos(2 * math.atan2(keyframe1.baseline / 2, keyframe1.depth[index1]))
    elif stereo2:
        cos_stereo2 = math.cos(2 * math.atan2(keyframe2.baseline / 2, keyframe2.depth[index2]))
    cos_stereo = min(cos_stereo1, cos_stereo2)

    if 0 < cos_rays < cos_stereo and (stereo1 or stereo2 or cos_rays < _MAX_COS_PARALLAX):
        x3d = triangulate_linear(xn1, xn2, _pose_3x4(rcw1, tcw1), _pose_3x4(rcw2, tcw2))
    elif stereo1 and cos_stereo1 < cos_stereo2:
        x3d = keyframe1.unproject_stereo(index1)
    elif stereo2 and cos_stereo2 < cos_stereo1:
        x3d = keyframe2.unproject_stereo(index2)
    else:
        return None
    if x3d is None:
        return None
    x3d = np.asarray(x3d, dtype=float).reshape(3)

    pc1 = rcw1 @ x3d + tcw1
    if pc1[2] <= 0:
        return None
    pc2 = rcw2 @ x3d + tcw2
    if pc2[2] <= 0:
        return None

    # The right-image check uses the first keyframe's stereo baseline for both views.
    bf = keyframe1.bf
    if not _reprojection_ok(keyframe1, kp1, ur1, pc1, bf, keyframe1.level_sigma2[kp1.octave]):
        return None
    if not _reprojection_ok(keyframe2, kp2, ur2, pc2, bf, keyframe2.level_sigma2[kp2.octave]):
        return None

    dist1 = float(np.linalg.norm(x3d - np.asarray(keyframe1.get_camera_center()).reshape(3)))
    dist2 = float(np.linalg.norm(x3d - np.asarray(keyframe2.get_camera_center()).reshape(3)))
    if dist1 == 0 or dist2 == 0:
        return None

    ratio_dist = dist2 / dist1
    ratio_octave = keyframe1.scale_factors[kp1.octave] / keyframe2.scale_factors[kp2.octave]
    ratio_factor = _SCALE_RATIO_FACTOR * keyframe1.scale_factor
    if ratio_dist * ratio_factor < ratio_octave or ratio_dist > ratio_octave * ratio_factor:
        return None
    return x3d


def create_map_points(
    keyframe1: Any,
    keyframe2: Any,
    matched_indices: Iterable[tuple[int, int]],
    world_map: Any,
) -> list[MapPoint]:
    """Triangulate each ``(index1, index2)`` match and register the new points.

    Each point is observed by both keyframes, linked to their keypoints and
    added to ``world_map``; ``keyframe1`` is its reference keyframe.
    """
    created: list[MapPoint] = []
    for index1, index2 in matched_indices:
        x3d = triangulate_match(keyframe1, keyframe2, index1, index2)
        if x3d is None:
            continue
        point = MapPoint(x3d, keyframe1, world_map)
        point.add_observation(keyframe1, index1)
        point.add_observation(keyframe2, index2)
        keyframe1.add_map_point(point, index1)
        keyframe2.add_map_point(point, index2)
        point.compute_distinctive_descriptors()
        point.update_normal_and_depth()
        world_map.add_map_point(point)
        created.append(point)
    return created