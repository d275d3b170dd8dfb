import numpy as np
import pytest

from slammap.keyframe import KeyFrame
from slammap.map_drawer import MapDrawer, frustum_segments
from slammap.world_map import Map

SETTINGS = {
    "Viewer.KeyFrameSize": 0.05,
    "Viewer.KeyFrameLineWidth": 1.0,
    "Viewer.GraphLineWidth": 0.9,
    "Viewer.PointSize": 2.0,
    "Viewer.CameraSize": 0.08,
    "Viewer.CameraLineWidth": 3.0,
}


class _Point:
    def __init__(self, position, bad=False):
        self._position = np.array(position, dtype=float)
        self._bad = bad

    def is_bad(self):
        return self._bad

    def get_world_pos(self):
        return self._position.copy()


def _pose_at(center):
    pose = np.eye(4)
    pose[:3, 3] = -np.array(center, dtype=float)
    return pose


def test_frustum_segments_shape_and_first_edge():
    segs = frustum_segments(1.0)
    assert segs.shape == (8, 2, 3)
    np.testing.assert_allclose(segs[0], [[0, 0, 0], [1.0, 0.75, 0.6]])
    assert set(np.round(segs[:, :, 2].ravel(), 6)) == {0.0, 0.6}


def test_frustum_scales_linearly():
    np.testing.assert_allclose(frustum_segments(2.0), 2.0 * frustum_segments(1.0))


def test_settings_are_read():
    drawer = MapDrawer(Map(), SETTINGS)
    assert drawer.keyframe_size == 0.05
    assert drawer.camera_size == 0.08
    assert MapDrawer(Map(), {}).point_size == 0.0


def test_map_point_vertices_split_reference_and_skip_bad():
    world = Map()
    p1, p2, bad = _Point([1, 2, 3]), _Point([4, 5, 6]), _Point([7, 8, 9], bad=True)
    for p in (p1, p2, bad):
        world.add_map_point(p)
    world.set_reference_map_points([p2, bad])
    others, refs = MapDrawer(world, SETTINGS).map_point_vertices()
    np.testing.assert_allclose(others, [[1, 2, 3]])
    np.testing.assert_allclose(refs, [[4, 5, 6]])


def test_map_point_vertices_empty_map():
    world = Map()
    world.set_reference_map_points([_Point([1, 1, 1])])
    others, refs = MapDrawer(world, SETTINGS).map_point_vertices()
    assert others.shape == (0, 3)
    assert refs.shape == (0, 3)


def test_keyframe_frustums_follow_pose():
    world = Map()
    kf = KeyFrame(pose=_pose_at([1.0, 2.0, 3.0]))
    world.add_keyframe(kf)
    drawer = MapDrawer(world, SETTINGS)
    (frustum,) = drawer.keyframe_frustums()
    expected = frustum_segments(SETTINGS["Viewer.KeyFrameSize"]) + np.array([1.0, 2.0, 3.0])
    np.testing.assert_allclose(frustum, expected)


def test_graph_segments_include_parent_loop_and_strong_links():
    world = Map()
    a = KeyFrame(pose=_pose_at([0, 0, 0]))
    b = KeyFrame(pose=_pose_at([1, 0, 0]))
    c = KeyFrame(pose=_pose_at([0, 1, 0]))
    for kf in (a, b, c):
        world.add_keyframe(kf)
    a.add_connection(b, 150)
    a.add_connection(c, 50)
    c.change_parent(a)
    a.add_loop_edge(c)
    segments = MapDrawer(world, SETTINGS).graph_segments()
    as_tuples = {(tuple(s), tuple(e)) for s, e in (map(np.round, seg) for seg in segments)}
    assert ((0, 0, 0), (1, 0, 0)) in as_tuples
    assert ((0, 0, 0), (0, 1, 0)) in as_tuples
    assert ((0, 1, 0), (0, 0, 0)) in as_tuples
    assert len(segments) == 3


def test_opengl_matrix_identity_without_pose():
    drawer = MapDrawer(Map(), SETTINGS)
    np.testing.assert_allclose(drawer.get_current_opengl_camera_matrix(), np.eye(4))


def test_opengl_matrix_inverts_pose():
    drawer = MapDrawer(Map(), SETTINGS)
    angle = 0.3
    tcw = np.eye(4)
    tcw[:3, :3] = [
        [np.cos(angle), -np.sin(angle), 0],
        [np.sin(angle), np.cos(angle), 0],
        [0, 0, 1],
    ]
    tcw[:3, 3] = [0.5, -1.0, 2.0]
    drawer.set_current_camera_pose(tcw)
    twc = drawer.get_current_opengl_camera_matrix()
    np.testing.assert_allclose(twc @ tcw, np.eye(4), atol=1e-12)


def test_current_camera_segments_with_identity():
    drawer = MapDrawer(Map(), SETTINGS)
    np.testing.assert_allclose(
        drawer.current_camera_segments(np.eye(4)),
        frustum_segments(SETTINGS["Viewer.CameraSize"]),
    )


def test_current_camera_segments_translate():
    drawer = MapDrawer(Map(), SETTINGS)
    twc = np.eye(4)
    twc[:3, 3] = [3.0, 0.0, 0.0]
    segs = drawer.current_camera_segments(twc)
    assert segs[0, 0] == pytest.approx([3.0, 0.0, 0.0])