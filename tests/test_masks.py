import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from nodeflow import FrameRange, LogicError, MBLayout, masks


def _layout():
    # two sequences of length 2 and 1: column 3 is a gap
    return MBLayout.from_lengths([2, 1])


def test_column_range_resolution():
    layout = _layout()
    assert masks.column_range(4, FrameRange.all(layout), layout) == (0, 4)
    assert masks.column_range(4, FrameRange(layout, 1), layout) == (2, 2)
    assert masks.column_range(4, FrameRange(layout, 1, 1), layout) == (3, 1)
    # no layout: the whole matrix, whatever the frame
    assert masks.column_range(5, FrameRange(layout, 1), None) == (0, 5)
    with pytest.raises(LogicError):
        masks.column_range(3, FrameRange.all(layout), layout)
    with pytest.raises(LogicError):
        masks.column_range(4, FrameRange(layout, 2), layout)


def test_data_for_is_a_view():
    layout = _layout()
    data = torch.zeros(2, 4)
    view = masks.data_for(data, FrameRange(layout, 1), layout)
    view.fill_(7.0)
    assert data[:, 2:].eq(7.0).all()
    assert data[:, :2].eq(0.0).all()


def test_masking_is_idempotent():
    layout = _layout()
    data = torch.arange(8.0).reshape(2, 4)
    masks.mask_to_zero(data, layout, FrameRange.all(layout))
    once = data.clone()
    masks.mask_to_zero(data, layout, FrameRange.all(layout))
    assert torch.equal(once, data)
    assert data[:, 3].eq(0.0).all()
    assert data[:, :3].ne(0.0).any()


def test_invalidate_and_nan_check():
    layout = _layout()
    data = torch.ones(2, 4)
    masks.invalidate(data, layout, FrameRange.all(layout))
    assert torch.isnan(data[:, 3]).all()
    assert not masks.has_nan_outside_gaps(data, layout, FrameRange.all(layout))
    data[0, 0] = float("nan")
    assert masks.has_nan_outside_gaps(data, layout, FrameRange.all(layout))


def test_gap_columns_for_single_frame():
    layout = _layout()
    assert masks.gap_columns(layout, FrameRange(layout, 0)) is None
    gaps = masks.gap_columns(layout, FrameRange(layout, 1))
    assert gaps.tolist() == [False, True]
    assert masks.gap_columns(MBLayout.from_lengths([2, 2]), FrameRange.all()) is None


def test_poison_then_zero_leaves_zero_gaps():
    layout = _layout()
    data = torch.ones(2, 4)
    masks.invalidate(data, layout, FrameRange.all(layout))
    masks.mask_to_zero(data, layout, FrameRange.all(layout))
    assert data[:, 3].eq(0.0).all()
    assert data[:, :3].eq(1.0).all()
