import math
from types import SimpleNamespace

import numpy as np
import pytest

from slammap.map_point import MapPoint, descriptor_distance
from slammap.world_map import Map

SCALE = 1.2
LEVELS = 8
FACTORS = [SCALE**i for i in range(LEVELS)]


class _KF:
    def __init__(self, kf_id, center=(0.0, 0.0, 0.0), u_right=None, descriptors=None,
                 sem_descriptors=None, n=4):
        self.id = kf_id
        self.frame_id = kf_id * 10
        self.u_right = u_right if u_right is not None else [-1.0] * n
        self.keys_un = [SimpleNamespace(octave=0) for _ in range(n)]
        self.descriptors = (
            descriptors if descriptors is not None else np.zeros((n, 1), dtype=np.uint8)
        )
        self.sem_descriptors = (
            sem_descriptors if sem_descriptors is not None else np.zeros((n, 1), dtype=np.uint8)
        )
        self.scale_factors = FACTORS
        self.scale_levels = LEVELS
        self.log_scale_factor = math.log(SCALE)
        self.center = np.array(center, dtype=float)
        self.bad = False
        self.erased = []
        self.replaced = {}

    def is_bad(self):
        return self.bad

    def get_camera_center(self):
        return self.center.copy()

    def erase_map_point_match(self, index):
        self.erased.append(index)

    def replace_map_point_match(self, index, point):
        self.replaced[index] = point


def _point(world_map=None, ref=None, pos=(0.0, 0.0, 1.0)):
    world_map = world_map or Map()
    ref = ref or _KF(1)
    return MapPoint(pos, ref, world_map)


def test_descriptor_distance_counts_bits():
    a = np.array([0xFF], dtype=np.uint8)
    b = np.array([0x00], dtype=np.uint8)
    assert descriptor_distance(a, b) == 8
    assert descriptor_distance(a, b) == descriptor_distance(b, a)
    assert descriptor_distance(a, a) == 0


def test_descriptor_distance_length_mismatch():
    with pytest.raises(ValueError):
        descriptor_distance(np.zeros(2, dtype=np.uint8), np.zeros(3, dtype=np.uint8))


def test_ids_increase_and_initial_fields():
    m = Map()
    ref = _KF(5)
    p1 = MapPoint((0, 0, 1), ref, m)
    p2 = MapPoint((0, 0, 2), ref, m)
    assert p2.id == p1.id + 1
    assert p1.first_kf_id == 5
    assert p1.first_frame == ref.frame_id
    assert p1.get_reference_keyframe() is ref
    assert p1.get_found_ratio() == 1.0
    assert np.array_equal(p1.get_normal(), np.zeros(3))


def test_world_pos_is_copied():
    p = _point()
    pos = np.array([1.0, 2.0, 3.0])
    p.set_world_pos(pos)
    pos[0] = 99.0
    got = p.get_world_pos()
    assert np.array_equal(got, [1.0, 2.0, 3.0])
    got[1] = -5.0
    assert p.get_world_pos()[1] == 2.0


def test_add_observation_counts_stereo_twice():
    p = _point()
    mono = _KF(2)
    stereo = _KF(3, u_right=[5.0, -1.0, -1.0, -1.0])
    p.add_observation(mono, 1)
    p.add_observation(stereo, 0)
    p.add_observation(mono, 2)
    assert p.observations() == 3
    assert p.get_observations() == {mono: 1, stereo: 0}
    assert p.get_index_in_keyframe(mono) == 1
    assert p.get_index_in_keyframe(_KF(9)) == -1
    assert p.is_in_keyframe(stereo)


def test_erase_observation_moves_reference_and_discards():
    m = Map()
    ref = _KF(1)
    other = _KF(2)
    third = _KF(3)
    p = MapPoint((0, 0, 1), ref, m)
    m.add_map_point(p)
    for kf in (ref, other, third):
        p.add_observation(kf, 0)
    p.erase_observation(ref)
    assert p.get_reference_keyframe() is other
    assert p.is_bad()
    assert m.map_points_in_map() == 0
    assert other.erased == [0]
    assert third.erased == [0]
    assert p.get_observations() == {}


def test_erase_observation_keeps_point_with_enough_observations():
    p = _point()
    kfs = [_KF(i) for i in range(2, 6)]
    for kf in kfs:
        p.add_observation(kf, 0)
    p.erase_observation(kfs[0])
    assert not p.is_bad()
    assert p.observations() == 3


def test_found_ratio():
    p = _point()
    p.increase_visible(3)
    assert p.get_found_ratio() == pytest.approx(0.25)
    p.increase_found(3)
    assert p.get_found_ratio() == pytest.approx(1.0)


def test_replace_transfers_observations():
    m = Map()
    ref = _KF(1)
    p = MapPoint((0, 0, 1), ref, m)
    target = MapPoint((0, 0, 1), ref, m)
    m.add_map_point(p)
    m.add_map_point(target)
    shared = _KF(2)
    only_p = _KF(3)
    p.add_observation(shared, 1)
    p.add_observation(only_p, 2)
    target.add_observation(shared, 0)
    p.increase_visible(4)
    p.increase_found(2)

    p.replace(target)

    assert p.is_bad()
    assert p.get_replaced() is target
    assert shared.erased == [1]
    assert only_p.replaced == {2: target}
    assert target.get_index_in_keyframe(only_p) == 2
    assert target.get_found_ratio() == pytest.approx((1 + 3) / (1 + 5))
    assert m.get_all_map_points() == [target]


def test_replace_with_self_does_nothing():
    p = _point()
    p.replace(p)
    assert not p.is_bad()
    assert p.get_replaced() is None


def test_set_bad_flag_clears_observations():
    m = Map()
    p = _point(world_map=m)
    m.add_map_point(p)
    kf = _KF(2)
    p.add_observation(kf, 3)
    p.set_bad_flag()
    assert p.is_bad()
    assert kf.erased == [3]
    assert p.observations() == 1
    assert p.get_observations() == {}
    assert m.map_points_in_map() == 0


def test_compute_distinctive_descriptors_picks_least_median():
    p = _point()
    values = [0xFF, 0x00, 0x01]
    for i, v in enumerate(values):
        desc = np.array([[v]] * 4, dtype=np.uint8)
        kf = _KF(10 + i, descriptors=desc, sem_descriptors=desc.copy())
        p.add_observation(kf, 0)
    p.compute_distinctive_descriptors()
    assert np.array_equal(p.get_descriptor(), np.array([0x00], dtype=np.uint8))
    assert np.array_equal(p.get_sem_descriptor(), np.array([0x00], dtype=np.uint8))


def test_compute_distinctive_descriptors_skips_bad_keyframes():
    p = _point()
    bad = _KF(2, descriptors=np.full((4, 1), 0xAA, dtype=np.uint8))
    bad.bad = True
    p.add_observation(bad, 0)
    p.compute_distinctive_descriptors()
    assert p.get_descriptor() is None


def test_update_normal_and_depth():
    ref = _KF(1, center=(0.0, 0.0, 0.0))
    p = _point(ref=ref, pos=(0.0, 0.0, 2.0))
    p.add_observation(ref, 0)
    p.update_normal_and_depth()
    assert np.allclose(p.get_normal(), [0.0, 0.0, 1.0])
    assert p.get_max_distance_invariance() == pytest.approx(1.2 * 2.0)
    assert p.get_min_distance_invariance() == pytest.approx(0.8 * 2.0 / FACTORS[-1])


def test_update_normal_averages_directions():
    ref = _KF(1, center=(0.0, 0.0, 0.0))
    side = _KF(2, center=(2.0, 0.0, 2.0))
    p = _point(ref=ref, pos=(0.0, 0.0, 2.0))
    p.add_observation(ref, 0)
    p.add_observation(side, 0)
    p.update_normal_and_depth()
    normal = p.get_normal()
    assert normal[0] < 0
    assert normal[2] > 0
    assert normal[1] == 0


def test_predict_scale_clamps():
    ref = _KF(1)
    p = _point(ref=ref, pos=(0.0, 0.0, 1.0))
    p.add_observation(ref, 0)
    p.update_normal_and_depth()
    assert p.predict_scale(1.0, ref) == 0
    assert p.predict_scale(100.0, ref) == 0
    assert p.predict_scale(1e-6, ref) == LEVELS - 1
    assert p.predict_scale(1.0 / SCALE**2, ref) in (2, 3)


def test_from_frame():
    m = Map()
    frame = SimpleNamespace(
        id=42,
        keys_un=[SimpleNamespace(octave=1)],
        scale_factors=FACTORS,
        scale_levels=LEVELS,
        descriptors=np.array([[7, 9]], dtype=np.uint8),
        get_camera_center=lambda: np.zeros(3),
    )
    p = MapPoint.from_frame((3.0, 0.0, 4.0), m, frame, 0)
    assert p.first_kf_id == -1
    assert p.first_frame == 42
    assert p.get_reference_keyframe() is None
    assert np.allclose(p.get_normal(), [0.6, 0.0, 0.8])
    assert p.get_max_distance_invariance() == pytest.approx(1.2 * 5.0 * SCALE)
    assert np.array_equal(p.get_descriptor(), np.array([7, 9], dtype=np.uint8))
    frame.descriptors[0, 0] = 0
    assert p.get_descriptor()[0] == 7