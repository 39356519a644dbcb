import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from nodeflow import TimeStamp, TimeStampCounter


def test_counter_is_fetch_and_add():
    counter = TimeStampCounter()
    assert counter.next_id() == 0
    assert counter.next_id() == 1
    assert counter.current == 2


def test_equal_stamps_count_as_older():
    counter = TimeStampCounter()
    a = TimeStamp(counter)
    b = TimeStamp(counter)
    assert a.eval_time_stamp == b.eval_time_stamp == 0
    # inclusive comparison: equal stamps force re-evaluation
    assert a.is_older_than(b) and b.is_older_than(a)
    # strict comparison: equal stamps are up to date
    assert not a.is_strictly_older_than(b)


def test_bump_orders_stamps():
    counter = TimeStampCounter()
    a = TimeStamp(counter)
    b = TimeStamp(counter)
    b.bump_eval_time_stamp()
    a.bump_eval_time_stamp()
    assert b.is_strictly_older_than(a)
    assert not a.is_older_than(b)

    c = TimeStamp(counter)
    a.copy_time_stamp_to(c)
    assert c.eval_time_stamp == a.eval_time_stamp
    c.reset_eval_time_stamp()
    assert c.eval_time_stamp == counter.current
