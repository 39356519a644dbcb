# nodeflow/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import torch


class NodeState:
    """
    Opaque snapshot exported by a stateful node (e.g. a delay node carrying
    its last frames across minibatch boundaries) and imported elsewhere.
    """


@dataclass
class DelayedValueState(NodeState):
    history: Optional[torch.Tensor] = None
    time_step: int = 1


@dataclass
class OwnedNodeState:
    """
    Members of a node that belong to the graph manager.

    Only the graph manager (loop formation, gradient marking) writes these;
    node logic reads them.
    """

    needs_gradient: bool = False
    # False for learnable parameters and inputs: never returned to the pool
    value_sharable: bool = True
    is_part_of_loop: bool = False

    # written by recurrent-loop formation
    loop_id: int = -1
    visited_order: int = -1
    index_in_loop: int = 0

    def purge_state_for_forming_recurrent_loops(self) -> None:
        self.loop_id = -1
        self.visited_order = -1
        self.index_in_loop = 0

    def copy_owned_state_to(self, other: "OwnedNodeState") -> None:
        other.is_part_of_loop = self.is_part_of_loop
        other.needs_gradient = self.needs_gradient
