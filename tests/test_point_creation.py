import numpy as np
import pytest

from slammap.keyframe import KeyFrame, KeyPoint
from slammap.point_creation import create_map_points, triangulate_match
from slammap.world_map import Map

FX = 500.0
CX = 320.0
CY = 240.0


def _pose(center):
    tcw = np.eye(4)
    tcw[:3, 3] = -np.asarray(center, dtype=float)
    return tcw


def _keyframe(keys, center=(0.0, 0.0, 0.0), **kwargs):
    n = len(keys)
    return KeyFrame(
        keys,
        fx=FX,
        fy=FX,
        cx=CX,
        cy=CY,
        pose=_pose(center),
        descriptors=np.arange(n * 32, dtype=np.uint8).reshape(n, 32),
        sem_descriptors=np.zeros((n, 32), dtype=np.uint8),
        **kwargs,
    )


def test_two_view_triangulation_recovers_point():
    kf1 = _keyframe([KeyPoint(370.0, 240.0)])
    kf2 = _keyframe([KeyPoint(270.0, 240.0)], center=(1.0, 0.0, 0.0))
    x3d = triangulate_match(kf1, kf2, 0, 0)
    assert np.allclose(x3d, [0.5, 0.0, 5.0], atol=1e-6)


def test_point_behind_cameras_is_rejected():
    kf1 = _keyframe([KeyPoint(270.0, 240.0)])
    kf2 = _keyframe([KeyPoint(370.0, 240.0)], center=(1.0, 0.0, 0.0))
    assert triangulate_match(kf1, kf2, 0, 0) is None


def test_large_reprojection_error_is_rejected():
    kf1 = _keyframe([KeyPoint(370.0, 240.0)])
    kf2 = _keyframe([KeyPoint(270.0, 300.0)], center=(1.0, 0.0, 0.0))
    assert triangulate_match(kf1, kf2, 0, 0) is None


def test_no_parallax_without_stereo_is_rejected():
    kf1 = _keyframe([KeyPoint(370.0, 240.0)])
    kf2 = _keyframe([KeyPoint(370.0, 240.0)])
    assert triangulate_match(kf1, kf2, 0, 0) is None


def test_stereo_unprojection_used_without_parallax():
    kf1 = _keyframe(
        [KeyPoint(370.0, 240.0)],
        u_right=[360.0],
        depth=[5.0],
        bf=50.0,
        baseline=0.1,
    )
    kf2 = _keyframe([KeyPoint(370.0, 240.0)])
    x3d = triangulate_match(kf1, kf2, 0, 0)
    assert np.allclose(x3d, [0.5, 0.0, 5.0])


def test_inconsistent_scale_is_rejected():
    kf1 = _keyframe([KeyPoint(370.0, 240.0)])
    kf2 = _keyframe(
        [KeyPoint(270.0, 240.0, octave=7)],
        center=(1.0, 0.0, 0.0),
        scale_levels=8,
    )
    assert triangulate_match(kf1, kf2, 0, 0) is None


def test_create_map_points_registers_new_point():
    world_map = Map()
    kf1 = _keyframe([KeyPoint(370.0, 240.0), KeyPoint(270.0, 240.0)])
    kf2 = _keyframe(
        [KeyPoint(270.0, 240.0), KeyPoint(370.0, 240.0)], center=(1.0, 0.0, 0.0)
    )
    created = create_map_points(kf1, kf2, [(0, 0), (1, 1)], world_map)
    assert len(created) == 1
    point = created[0]
    assert np.allclose(point.get_world_pos(), [0.5, 0.0, 5.0], atol=1e-6)
    assert world_map.get_all_map_points() == [point]
    assert kf1.get_map_point(0) is point
    assert kf2.get_map_point(0) is point
    assert kf1.get_map_point(1) is None
    assert point.observations() == 2
    assert point.get_reference_keyframe() is kf1
    assert point.get_observations() == {kf1: 0, kf2: 0}


def test_create_map_points_with_no_matches():
    world_map = Map()
    kf1 = _keyframe([KeyPoint(370.0, 240.0)])
    kf2 = _keyframe([KeyPoint(270.0, 240.0)], center=(1.0, 0.0, 0.0))
    assert create_map_points(kf1, kf2, [], world_map) == []
    assert world_map.map_points_in_map() == 0


@pytest.mark.parametrize("shift", [0.5, 2.0])
def test_triangulated_point_reprojects_into_both_views(shift):
    kf1 = _keyframe([KeyPoint(370.0, 240.0)])
    u2 = CX + FX * (0.5 - shift) / 5.0
    kf2 = _keyframe([KeyPoint(u2, 240.0)], center=(shift, 0.0, 0.0))
    x3d = triangulate_match(kf1, kf2, 0, 0)
    pc2 = kf2.get_rotation() @ x3d + kf2.get_translation()
    assert FX * pc2[0] / pc2[2] + CX == pytest.approx(u2)