"""Local mapping: keyframe queue, point and keyframe culling, and stop control."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Found/visible ratio below which a recent point is discarded.
_MIN_FOUND_RATIO = 0.25
# Observations by other keyframes that make a point redundant.
_REDUNDANT_OBSERVATIONS = 3
# Share of redundant points that makes a keyframe redundant.
_REDUNDANT_RATIO = 0.9


class LocalMapping:
    """Keeps the local map in shape as keyframes arrive from tracking.

    Keyframes are queued by :meth:`insert_keyframe` and taken one at a time by
    :meth:`process_new_keyframe`. Newly added points are watched by
    :meth:`map_point_culling`; redundant keyframes are removed by
    :meth:`keyframe_culling`. Other threads steer the mapper through the
    stop, reset and finish requests.
    """

    def __init__(self, world_map: Any, monocular: bool) -> None:
        self.world_map = world_map
        self.monocular = bool(monocular)
        self.loop_closer: Any = None
        self.tracker: Any = None
        self.current_keyframe: Any = None
        self.recently_added: list[Any] = []
        self.abort_ba = False

        self._new_keyframes: deque[Any] = deque()
        self._new_kfs_lock = threading.Lock()

        self._reset_requested = False
        self._reset_cond = threading.Condition()

        self._finish_requested = False
        self._finished = True
        self._finish_lock = threading.Lock()

        self._stopped = False
        self._stop_requested = False
        self._not_stop = False
        self._stop_lock = threading.Lock()

        self._accept_keyframes = True
        self._accept_lock = threading.Lock()

    def set_loop_closer(self, loop_closer: Any) -> None:
        self.loop_closer = loop_closer

    def set_tracker(self, tracker: Any) -> None:
        self.tracker = tracker

    # Keyframe queue

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe and ask any running bundle adjustment to abort."""
        with self._new_kfs_lock:
            self._new_keyframes.append(keyframe)
            self.abort_ba = True

    def check_new_keyframes(self) -> bool:
        with self._new_kfs_lock:
            return bool(self._new_keyframes)

    def keyframes_in_queue(self) -> int:
        with self._new_kfs_lock:
            return len(self._new_keyframes)

    def process_new_keyframe(self) -> Any:
        """Take the oldest queued keyframe, link its points and add it to the map."""
        with self._new_kfs_lock:
            if not self._new_keyframes:
                raise LookupError("no keyframe is waiting to be processed")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        keyframe.compute_bow()

        for index, point in enumerate(keyframe.get_map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self.recently_added.append(point)

        keyframe.update_connections()
        self.world_map.add_keyframe(keyframe)
        return keyframe

    def _require_current(self) -> Any:
        if self.current_keyframe is None:
            raise LookupError("no keyframe has been processed yet")
        return self.current_keyframe

    # Culling

    def map_point_culling(self) -> None:
        """Discard recent points that are rarely found or poorly observed."""
        current_id = self._require_current().id
        threshold = 2 if self.monocular else 3

        kept = []
        for point in self.recently_added:
            age = current_id - point.first_kf_id
            if point.is_bad():
                continue
            if point.get_found_ratio() < _MIN_FOUND_RATIO:
                point.set_bad_flag()
            elif age >= 2 and point.observations() <= threshold:
                point.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self.recently_added = kept

    def _is_redundant(self, keyframe: Any, index: int, point: Any) -> bool:
        if point.observations() <= _REDUNDANT_OBSERVATIONS:
            return False
        scale_level = keyframe.keys_un[index].octave
        count = 0
        for other, other_index in point.get_observations().items():
            if other is keyframe:
                continue
            if other.keys_un[other_index].octave <= scale_level + 1:
                count += 1
                if count >= _REDUNDANT_OBSERVATIONS:
                    return True
        return False

    def keyframe_culling(self) -> None:
        """Mark as bad covisible keyframes whose points are mostly seen elsewhere.

        A point is redundant when at least three other keyframes see it at the
        same or a finer scale. Outside the monocular case only close stereo
        points are considered.
        """
        current = self._require_current()
        for keyframe in current.get_vector_covisible_keyframes():
            if keyframe.id == 0:
                continue
            redundant = 0
            considered = 0
            for index, point in enumerate(keyframe.get_map_point_matches()):
                if point is None or point.is_bad():
                    continue
                if not self.monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue
                considered += 1
                if self._is_redundant(keyframe, index, point):
                    redundant += 1
            if redundant > _REDUNDANT_RATIO * considered:
                keyframe.set_bad_flag()

    # Stop control

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
            with self._new_kfs_lock:
                self.abort_ba = True

    def stop(self) -> bool:
        """Stop if asked to and allowed to; return whether it stopped."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                logger.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Resume after a stop, dropping queued keyframes; ignored once finished."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_kfs_lock:
                self._new_keyframes.clear()
        logger.info("Local Mapping RELEASE")

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails if already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = flag
            return True

    def interrupt_ba(self) -> None:
        self.abort_ba = True

    # Keyframe acceptance

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept_keyframes = flag

    # Reset

    def request_reset(self) -> None:
        """Ask for a reset and block until the mapping thread has done it."""
        with self._reset_cond:
            self._reset_requested = True
            self._reset_cond.wait_for(lambda: not self._reset_requested)

    def reset_if_requested(self) -> None:
        with self._reset_cond:
            if not self._reset_requested:
                return
            with self._new_kfs_lock:
                self._new_keyframes.clear()
            self.recently_added = []
            self._reset_requested = False
            self._reset_cond.notify_all()

    # Finish

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
            with self._stop_lock:
                self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished

    @property
    def last_processed(self) -> Optional[Any]:
        """The keyframe most recently taken from the queue."""
        return self.current_keyframe