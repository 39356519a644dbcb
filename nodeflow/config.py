# nodeflow/config.py

from __future__ import annotations

import enum
from dataclasses import dataclass, field

import torch

# On-disk model layouts understood by Operation.load().
MODEL_VERSION_1 = 1  # matrices only
MODEL_VERSION_2 = 2  # adds tensor shapes in front of parameter matrices
CURRENT_MODEL_VERSION = MODEL_VERSION_2

DEFAULT_HIDDEN_ACTIVATION = 0.1


class CopyNodeFlags(enum.IntFlag):
    """Selects what ComputationNode.copy_to() carries over."""

    NULL = 0
    VALUE = 1  # everything but the input links
    CHILDREN = 2  # only the input links
    ALL = 3


@dataclass(frozen=True)
class Precision:
    """
    Element precision of a node's storage, held by value on every node.
    """

    dtype: torch.dtype
    name: str

    def __str__(self) -> str:
        return self.name


FLOAT = Precision(torch.float32, "float")
DOUBLE = Precision(torch.float64, "double")


PRECISIONS = {FLOAT.name: FLOAT, DOUBLE.name: DOUBLE}


@dataclass(frozen=True)
class ExecutionConfig:
    """
    Knobs for one graph's execution.

      share_node_values: when False, every value is treated as needed during
        backprop, so nothing is released to the pool after forward prop.
      track_gap_nans: validate non-gap regions for NaN after each pass and
        poison gap columns with NaN to surface missing masking.
      initial_activation: value produced by delay nodes at sequence starts.
    """

    share_node_values: bool = True
    track_gap_nans: bool = False
    default_device: torch.device = field(default_factory=lambda: torch.device("cpu"))
    default_precision: Precision = FLOAT
    initial_activation: float = DEFAULT_HIDDEN_ACTIVATION
