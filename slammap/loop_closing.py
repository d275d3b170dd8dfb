"""Loop closing: queue of keyframes and detection of consistent loop candidates."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Optional

from slammap.loop_detection import ConsistencyTracker, min_covisible_score

logger = logging.getLogger(__name__)

# Keyframes that must pass after a loop before another one is searched for.
_MIN_KEYFRAMES_BETWEEN_LOOPS = 10


class LoopClosing:
    """Looks for places the camera has seen before.

    Keyframes arrive through :meth:`insert_keyframe`; :meth:`detect_loop`
    takes the oldest one, queries the keyframe database and keeps only
    candidates detected consistently over several consecutive keyframes.
    ``keyframe_db`` must provide ``add`` and ``detect_loop_candidates``;
    ``vocabulary`` must provide ``score``.
    """

    def __init__(
        self,
        world_map: Any,
        keyframe_db: Any,
        vocabulary: Any,
        fix_scale: bool,
    ) -> None:
        self.world_map = world_map
        self.keyframe_db = keyframe_db
        self.vocabulary = vocabulary
        self.fix_scale = bool(fix_scale)
        self.tracker: Any = None
        self.local_mapper: Any = None

        self.current_keyframe: Any = None
        self.matched_keyframe: Any = None
        self.last_loop_kf_id = 0
        self.enough_consistent_candidates: list[Any] = []
        self.consistency = ConsistencyTracker()

        self._queue: deque[Any] = deque()
        self._queue_lock = threading.Lock()

        self._reset_requested = False
        self._reset_cond = threading.Condition()

        self._finish_requested = False
        self._finished = True
        self._finish_lock = threading.Lock()

    def set_tracker(self, tracker: Any) -> None:
        self.tracker = tracker

    def set_local_mapper(self, local_mapper: Any) -> None:
        self.local_mapper = local_mapper

    # Queue

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe; the first keyframe of the map (id 0) is ignored."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    def keyframes_in_queue(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    # Detection

    def detect_loop(self) -> bool:
        """Take the oldest queued keyframe and look for a consistent loop.

        Returns True when some candidates have been consistent long enough;
        they are left in :attr:`enough_consistent_candidates`. The keyframe is
        added to the database in every case.
        """
        with self._queue_lock:
            if not self._queue:
                raise LookupError("no keyframe is waiting for loop detection")
            current = self._queue.popleft()
            # Keep the keyframe from being erased while it is examined.
            current.set_not_erase()
        self.current_keyframe = current

        if current.id < self.last_loop_kf_id + _MIN_KEYFRAMES_BETWEEN_LOOPS:
            self.keyframe_db.add(current)
            current.set_erase()
            return False

        min_score = min_covisible_score(current, self.vocabulary)
        candidates = self.keyframe_db.detect_loop_candidates(current, min_score)

        if not candidates:
            self.keyframe_db.add(current)
            self.consistency.clear()
            current.set_erase()
            return False

        self.enough_consistent_candidates = self.consistency.update(candidates)
        self.keyframe_db.add(current)

        if not self.enough_consistent_candidates:
            current.set_erase()
            return False
        return True

    def run(
        self,
        poll_interval: float = 0.005,
        on_loop: Optional[Callable[["LoopClosing"], None]] = None,
    ) -> None:
        """Process queued keyframes until a finish is requested.

        ``on_loop`` is called whenever :meth:`detect_loop` accepts a loop.
        """
        with self._finish_lock:
            self._finished = False
        while True:
            if self.check_new_keyframes():
                if self.detect_loop() and on_loop is not None:
                    on_loop(self)
            self.reset_if_requested()
            if self.check_finish():
                break
            time.sleep(poll_interval)
        self.set_finish()

    # Reset

    def request_reset(self) -> None:
        """Ask for a reset and block until the loop-closing thread has done it."""
        with self._reset_cond:
            self._reset_requested = True
            self._reset_cond.wait_for(lambda: not self._reset_requested)

    def reset_if_requested(self) -> None:
        with self._reset_cond:
            if not self._reset_requested:
                return
            with self._queue_lock:
                self._queue.clear()
            self.last_loop_kf_id = 0
            self._reset_requested = False
            self._reset_cond.notify_all()
            logger.debug("loop closing reset")

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

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished