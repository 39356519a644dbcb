# nodeflow/timestamp.py

from __future__ import annotations

import threading


class TimeStampCounter:
    """
    Process-wide monotonic id source. Starts at zero at import time and
    needs no teardown; the lock keeps ids unique when several graphs are
    built from different threads.
    """

    def __init__(self, start: int = 0) -> None:
        self._value = start
        self._lock = threading.Lock()

    @property
    def current(self) -> int:
        return self._value

    def next_id(self) -> int:
        """Return the current value and advance (fetch-and-add)."""
        with self._lock:
            value = self._value
            self._value += 1
        return value


COUNTER = TimeStampCounter()


class TimeStamp:
    """
    Evaluation time stamp of a computation result, used to skip
    recomputation of nodes whose inputs have not changed.
    """

    def __init__(self, counter: TimeStampCounter = COUNTER) -> None:
        self._counter = counter
        self.reset_eval_time_stamp()

    def copy_time_stamp_to(self, other: "TimeStamp") -> None:
        other._eval_time_stamp = self._eval_time_stamp

    def reset_eval_time_stamp(self) -> None:
        self._eval_time_stamp = self._counter.current

    @property
    def eval_time_stamp(self) -> int:
        return self._eval_time_stamp

    def bump_eval_time_stamp(self) -> None:
        self._eval_time_stamp = self.create_unique_id()

    def create_unique_id(self) -> int:
        return self._counter.next_id()

    def is_older_than(self, other: "TimeStamp") -> bool:
        # Equal stamps count as older, so a node stamped together with its
        # input is always re-evaluated.
        return self._eval_time_stamp - other._eval_time_stamp <= 0

    def is_strictly_older_than(self, other: "TimeStamp") -> bool:
        return self._eval_time_stamp - other._eval_time_stamp < 0
