import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from nodeflow import FrameRange, LogicError, MBLayout, TensorShape


def test_tensor_shape_basics():
    shape = TensorShape(3, 2)
    assert shape.rank == 2
    assert shape.num_elements == 6
    assert str(shape) == "3 x 2"
    assert shape == TensorShape((3, 2))
    assert TensorShape().num_elements == 0
    assert TensorShape(4).pad_to_rank(3).dims == (4, 1, 1)
    with pytest.raises(ValueError):
        TensorShape(-1)


def test_layout_columns_and_gaps():
    layout = MBLayout.from_lengths([3, 1])
    assert layout.num_parallel_sequences == 2
    assert layout.num_time_steps == 3
    assert layout.num_cols == 6
    assert layout.column_index(1, 2) == 5
    assert layout.is_gap(1, 1) and layout.is_gap(1, 2)
    assert not layout.is_gap(0, 2)
    assert layout.is_beginning_of_sequence(0, 0)
    assert layout.is_end_of_sequence(1, 0)
    assert layout.valid_columns().tolist() == [True, True, True, False, True, False]
    assert layout.has_gaps


def test_layout_rejects_overlap_and_copies_in_place():
    layout = MBLayout(1, 4)
    layout.add_sequence(0, 0, 0, 3)
    with pytest.raises(LogicError):
        layout.add_sequence(1, 0, 2, 4)
    with pytest.raises(LogicError):
        layout.add_sequence(1, 1, 0, 4)

    shared = MBLayout()
    before = id(shared)
    shared.copy_from(layout)
    assert id(shared) == before
    assert shared == layout
    assert shared.valid_columns().tolist() == [True, True, True, False]


def test_frame_range():
    layout = MBLayout.from_lengths([2])
    fr = FrameRange.all(layout)
    assert fr.is_all_frames()
    step = fr.at(1)
    assert step.time_index == 1 and not step.is_all_frames()
    assert step.with_time_offset(-1).time_index == 0
    assert step.sequence(0).seq_index == 0
    with pytest.raises(LogicError):
        fr.with_time_offset(1)
    with pytest.raises(LogicError):
        fr.sequence(0)
