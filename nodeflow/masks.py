# nodeflow/masks.py

from __future__ import annotations

from typing import Optional, Tuple

import torch

from .errors import LogicError
from .shapes import FrameRange, MBLayout


def column_range(num_cols: int, fr: FrameRange, layout: Optional[MBLayout]) -> Tuple[int, int]:
    """
    Resolve a frame range to `(first_column, column_count)` of a matrix
    laid out by `layout`.

    A matrix without layout is a single sample that broadcasts to every
    frame, so it is always returned whole.
    """
    if layout is None:
        return 0, num_cols
    if num_cols != layout.num_cols:
        raise LogicError(
            f"column_range: matrix has {num_cols} columns but the minibatch layout has {layout.num_cols}"
        )
    if fr.is_all_frames():
        return 0, num_cols
    if fr.layout is not None and fr.layout is not layout and fr.layout != layout:
        raise LogicError("column_range: FrameRange refers to a different minibatch layout.")
    t = int(fr.time_index)  # type: ignore[arg-type]
    if not 0 <= t < layout.num_time_steps:
        raise LogicError(f"column_range: time index {t} outside [0, {layout.num_time_steps})")
    S = layout.num_parallel_sequences
    if fr.seq_index is None:
        return t * S, S
    if not 0 <= fr.seq_index < S:
        raise LogicError(f"column_range: sequence index {fr.seq_index} outside [0, {S})")
    return t * S + fr.seq_index, 1


def data_for(data: torch.Tensor, fr: FrameRange, layout: Optional[MBLayout]) -> torch.Tensor:
    """Column-slice view of `data` for `fr`; writes go to `data`."""
    start, count = column_range(data.shape[1], fr, layout)
    return data[:, start:start + count]


def gap_columns(layout: Optional[MBLayout], fr: FrameRange) -> Optional[torch.Tensor]:
    """
    Bool vector over the columns selected by `fr`, True where the column is
    a gap. Returns None when there is nothing to mask.
    """
    if layout is None or not layout.has_gaps:
        return None
    start, count = column_range(layout.num_cols, fr, layout)
    gaps = ~layout.valid_columns()[start:start + count]
    if not bool(gaps.any()):
        return None
    return gaps


def mask_columns(
    data: torch.Tensor,
    layout: Optional[MBLayout],
    fr: FrameRange,
    value: float,
) -> None:
    """
    Overwrite the gap columns of `data` within `fr` with `value`.

    value=0 makes gaps neutral to reductions; NaN poisons them so that a
    consumer that forgot to mask shows up immediately.
    """
    gaps = gap_columns(layout, fr)
    if gaps is None:
        return
    view = data_for(data, fr, layout)
    view[:, gaps.to(view.device)] = value


def mask_to_zero(data: torch.Tensor, layout: Optional[MBLayout], fr: FrameRange) -> None:
    mask_columns(data, layout, fr, 0.0)


def invalidate(data: torch.Tensor, layout: Optional[MBLayout], fr: FrameRange) -> None:
    mask_columns(data, layout, fr, float("nan"))


def has_nan_outside_gaps(data: torch.Tensor, layout: Optional[MBLayout], fr: FrameRange) -> bool:
    view = data_for(data, fr, layout)
    gaps = gap_columns(layout, fr)
    if gaps is not None:
        view = view[:, ~gaps.to(view.device)]
    return bool(torch.isnan(view).any())
