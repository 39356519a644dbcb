# nodeflow/shapes.py

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import torch

from .errors import LogicError

GAP_SEQUENCE_ID = -1

_LAYOUT_SERIALS = itertools.count(1)


class TensorShape:
    """
    Shape of a single sample.

    Scalars are rank-1 shapes of dimension 1. A rank-0 shape is the
    "not yet known" placeholder and carries zero elements.
    """

    def __init__(self, *dims: Union[int, Sequence[int]]) -> None:
        if len(dims) == 1 and isinstance(dims[0], (tuple, list)):
            dims = tuple(dims[0])
        if any(int(d) < 0 for d in dims):  # type: ignore[arg-type]
            raise ValueError(f"TensorShape dimensions must be >= 0, got {dims}")
        self._dims: Tuple[int, ...] = tuple(int(d) for d in dims)  # type: ignore[arg-type]

    @property
    def dims(self) -> Tuple[int, ...]:
        return self._dims

    @property
    def rank(self) -> int:
        return len(self._dims)

    @property
    def num_elements(self) -> int:
        if not self._dims:
            return 0
        return math.prod(self._dims)

    def pad_to_rank(self, rank: int) -> "TensorShape":
        """Append singleton dimensions up to `rank` (broadcasting aligns on the left)."""
        if rank < self.rank:
            raise LogicError(f"pad_to_rank: cannot pad [{self}] down to rank {rank}")
        return TensorShape(self._dims + (1,) * (rank - self.rank))

    def __getitem__(self, index: int) -> int:
        return self._dims[index]

    def __iter__(self) -> Iterator[int]:
        return iter(self._dims)

    def __len__(self) -> int:
        return len(self._dims)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TensorShape):
            return NotImplemented
        return self._dims == other._dims

    def __hash__(self) -> int:
        return hash(self._dims)

    def __str__(self) -> str:
        return " x ".join(str(d) for d in self._dims)

    def __repr__(self) -> str:
        return f"TensorShape({', '.join(str(d) for d in self._dims)})"


@dataclass(frozen=True)
class SequenceInfo:
    """
    One sequence packed into a minibatch.

    `t_begin` may be negative (sequence started in an earlier minibatch) and
    `t_end` may exceed the minibatch length (it continues in the next one).
    """

    seq_id: int
    s: int
    t_begin: int
    t_end: int

    @property
    def is_gap(self) -> bool:
        return self.seq_id == GAP_SEQUENCE_ID


class MBLayout:
    """
    Maps the columns of a minibatch matrix to (time step, parallel sequence).

    Column index of (s, t) is `t * num_parallel_sequences + s`. Columns not
    covered by a real sequence are gaps.

    Many nodes observe one layout object; the data source owns it.
    """

    def __init__(self, num_parallel_sequences: int = 1, num_time_steps: int = 0) -> None:
        self.init(num_parallel_sequences, num_time_steps)

    def init(self, num_parallel_sequences: int, num_time_steps: int) -> None:
        if num_parallel_sequences < 1:
            raise ValueError("num_parallel_sequences must be >= 1")
        if num_time_steps < 0:
            raise ValueError("num_time_steps must be >= 0")
        self._num_parallel_sequences = int(num_parallel_sequences)
        self._num_time_steps = int(num_time_steps)
        self._sequences: List[SequenceInfo] = []
        self._valid: Optional[torch.Tensor] = None
        self._serial = next(_LAYOUT_SERIALS)

    @classmethod
    def from_lengths(
        cls,
        lengths: Iterable[int],
        num_time_steps: Optional[int] = None,
    ) -> "MBLayout":
        """
        One sequence per parallel slot, starting at t=0; the tail of every
        shorter sequence becomes a gap.
        """
        lengths = [int(n) for n in lengths]
        if not lengths:
            raise ValueError("from_lengths needs at least one sequence length.")
        steps = max(lengths) if num_time_steps is None else int(num_time_steps)
        layout = cls(len(lengths), steps)
        for s, length in enumerate(lengths):
            layout.add_sequence(s, s, 0, length)
            if length < steps:
                layout.add_gap(s, length, steps)
        return layout

    def copy_from(self, other: "MBLayout") -> None:
        """Take over `other`'s content in place; nodes linked to self see it."""
        self.init(other.num_parallel_sequences, other.num_time_steps)
        self._sequences = list(other._sequences)

    # --- Construction ---

    def add_sequence(self, seq_id: int, s: int, t_begin: int, t_end: int) -> SequenceInfo:
        if not 0 <= s < self._num_parallel_sequences:
            raise LogicError(f"add_sequence: parallel sequence index {s} out of range")
        if t_end <= t_begin:
            raise LogicError(f"add_sequence: empty time range [{t_begin}, {t_end})")
        info = SequenceInfo(seq_id=int(seq_id), s=int(s), t_begin=int(t_begin), t_end=int(t_end))
        for other in self._sequences:
            if other.s == info.s and other.t_begin < info.t_end and info.t_begin < other.t_end:
                raise LogicError(f"add_sequence: {info} overlaps {other}")
        self._sequences.append(info)
        self._valid = None
        self._serial = next(_LAYOUT_SERIALS)
        return info

    def add_gap(self, s: int, t_begin: int, t_end: int) -> SequenceInfo:
        return self.add_sequence(GAP_SEQUENCE_ID, s, t_begin, t_end)

    # --- Queries ---

    @property
    def serial(self) -> int:
        """Changes whenever the layout is rebuilt; one value per minibatch."""
        return self._serial

    @property
    def num_parallel_sequences(self) -> int:
        return self._num_parallel_sequences

    @property
    def num_time_steps(self) -> int:
        return self._num_time_steps

    @property
    def num_cols(self) -> int:
        return self._num_parallel_sequences * self._num_time_steps

    @property
    def sequences(self) -> Tuple[SequenceInfo, ...]:
        return tuple(self._sequences)

    def column_index(self, s: int, t: int) -> int:
        return t * self._num_parallel_sequences + s

    def sequence_at(self, s: int, t: int) -> Optional[SequenceInfo]:
        for info in self._sequences:
            if info.s == s and info.t_begin <= t < info.t_end and not info.is_gap:
                return info
        return None

    def is_gap(self, s: int, t: int) -> bool:
        return self.sequence_at(s, t) is None

    def is_beginning_of_sequence(self, s: int, t: int) -> bool:
        info = self.sequence_at(s, t)
        return info is not None and info.t_begin == t

    def is_end_of_sequence(self, s: int, t: int) -> bool:
        info = self.sequence_at(s, t)
        return info is not None and info.t_end == t + 1

    def valid_columns(self) -> torch.Tensor:
        """Bool vector over all columns; False marks a gap."""
        if self._valid is None:
            valid = torch.zeros(self.num_cols, dtype=torch.bool)
            for info in self._sequences:
                if info.is_gap:
                    continue
                begin = max(info.t_begin, 0)
                end = min(info.t_end, self._num_time_steps)
                for t in range(begin, end):
                    valid[self.column_index(info.s, t)] = True
            self._valid = valid
        return self._valid

    @property
    def has_gaps(self) -> bool:
        return bool((~self.valid_columns()).any())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MBLayout):
            return NotImplemented
        return (
            self._num_parallel_sequences == other._num_parallel_sequences
            and self._num_time_steps == other._num_time_steps
            and sorted(self._sequences, key=_sequence_key) == sorted(other._sequences, key=_sequence_key)
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"MBLayout(S={self._num_parallel_sequences}, T={self._num_time_steps}, "
            f"sequences={len(self._sequences)})"
        )


def _sequence_key(info: SequenceInfo) -> Tuple[int, int, int, int]:
    return (info.s, info.t_begin, info.t_end, info.seq_id)


class FrameRange:
    """
    Selects either the whole minibatch or one time step of it, optionally
    narrowed to a single parallel sequence.
    """

    def __init__(
        self,
        layout: Optional[MBLayout] = None,
        time_index: Optional[int] = None,
        seq_index: Optional[int] = None,
    ) -> None:
        if seq_index is not None and time_index is None:
            raise LogicError("FrameRange: a sequence index requires a time index.")
        self.layout = layout
        self.time_index = time_index
        self.seq_index = seq_index

    @classmethod
    def all(cls, layout: Optional[MBLayout] = None) -> "FrameRange":
        return cls(layout)

    def is_all_frames(self) -> bool:
        return self.time_index is None

    def at(self, time_index: int) -> "FrameRange":
        return FrameRange(self.layout, int(time_index))

    def sequence(self, seq_index: int) -> "FrameRange":
        if self.time_index is None:
            raise LogicError("FrameRange.sequence: select a time step first.")
        return FrameRange(self.layout, self.time_index, int(seq_index))

    def with_time_offset(self, offset: int) -> "FrameRange":
        if self.time_index is None:
            raise LogicError("FrameRange.with_time_offset: not defined for the whole minibatch.")
        return FrameRange(self.layout, self.time_index + offset, self.seq_index)

    def __repr__(self) -> str:
        if self.is_all_frames():
            return "FrameRange(all)"
        if self.seq_index is None:
            return f"FrameRange(t={self.time_index})"
        return f"FrameRange(t={self.time_index}, s={self.seq_index})"
