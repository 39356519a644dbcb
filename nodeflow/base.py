# nodeflow/base.py

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import torch

from .config import CopyNodeFlags
from .errors import InvalidArgumentError, LogicError
from .shapes import MBLayout, TensorShape
from .state import OwnedNodeState
from .timestamp import TimeStamp

logger = logging.getLogger(__name__)


class NodeBase:
    """
    Precision-independent part of a graph node.

    Responsibilities:
      - Identity (name, device) and the ordered input edges.
      - Sample shape and the shared minibatch layout.
      - Shape validation helpers used by operations.
      - Traversal (post-order node enumeration, arc enumeration), structural
        equality and the evaluation time stamp.

    Storage and numerics live on ComputationNode.
    """

    def __init__(self, name: Optional[str] = None, device: Optional[torch.device] = None) -> None:
        self.time_stamp = TimeStamp()
        self.name: str = name if name else self.create_unique_node_name()
        self.device = torch.device(device) if device is not None else torch.device("cpu")
        self._inputs: List[Optional[NodeBase]] = []
        self._sample_layout = TensorShape()
        self._mb_layout: Optional[MBLayout] = None
        self.owned = OwnedNodeState()
        self.parameter_update_required = False
        self.output_needed_during_backprop = True
        self.gradient_initialized = False

    @property
    def operation_name(self) -> str:
        raise NotImplementedError

    def create_unique_node_name(self) -> str:
        return f"AutoName{self.time_stamp.create_unique_id()}"

    # --- Sample shape & minibatch layout ---

    @property
    def sample_layout(self) -> TensorShape:
        return self._sample_layout

    def set_dims(self, shape: TensorShape, is_minibatch: bool) -> None:
        """Set the sample shape; `is_minibatch` must agree with the linked layout."""
        if self.has_mb_layout != bool(is_minibatch):
            raise LogicError(
                f"{self._description()}: set_dims: the minibatch layout must be "
                f"{'linked' if is_minibatch else 'unlinked'} first."
            )
        self._sample_layout = TensorShape(shape.dims)

    @property
    def mb_layout(self) -> Optional[MBLayout]:
        return self._mb_layout

    @property
    def has_mb_layout(self) -> bool:
        return self._mb_layout is not None

    def link_to_mb_layout(self, layout: Optional[MBLayout]) -> None:
        self._mb_layout = layout

    @property
    def num_time_steps(self) -> int:
        if self._mb_layout is None:
            raise LogicError(f"{self._description()}: num_time_steps requires a minibatch layout.")
        return self._mb_layout.num_time_steps

    @property
    def num_parallel_sequences(self) -> int:
        if self._mb_layout is None:
            raise LogicError(f"{self._description()}: num_parallel_sequences requires a minibatch layout.")
        return self._mb_layout.num_parallel_sequences

    @property
    def num_cols(self) -> int:
        """Columns of the sample matrix: one per frame, or 1 without a layout."""
        if self._mb_layout is not None:
            return self._mb_layout.num_cols
        return 1

    @property
    def num_rows(self) -> int:
        return self._sample_layout.num_elements

    def reduces_in_time_wrt(self, other: "NodeBase") -> bool:
        """True when values of `other` are summed over time to produce ours."""
        return self.num_cols < other.num_cols

    # --- Inputs ---

    @property
    def inputs(self) -> Tuple[Optional["NodeBase"], ...]:
        return tuple(self._inputs)

    @property
    def num_inputs(self) -> int:
        return len(self._inputs)

    def input(self, index: int) -> "NodeBase":
        node = self._inputs[index]
        if node is None:
            raise LogicError(f"{self._description()}: input {index} is empty.")
        return node

    def is_leaf(self) -> bool:
        return not self._inputs

    def set_input(self, index: int, node: Optional["NodeBase"]) -> None:
        if index > len(self._inputs):
            raise InvalidArgumentError(
                f"{self._description()}: set_input: index {index} leaves a hole after {len(self._inputs)} inputs."
            )
        if index == len(self._inputs):
            self._inputs.append(node)
        else:
            self._inputs[index] = node

    @staticmethod
    def inputs_from_config(record: Mapping[str, Any]) -> List[Optional["NodeBase"]]:
        """Read the "inputs" entry of a config record: one node or a list of nodes."""
        value = record.get("inputs")
        if value is None:
            return []
        if isinstance(value, NodeBase):
            return [value]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise InvalidArgumentError(f"'inputs' must be a node or a list of nodes, got {type(value).__name__}")

    # --- Graph-owned state ---

    @property
    def needs_gradient(self) -> bool:
        return self.owned.needs_gradient

    @needs_gradient.setter
    def needs_gradient(self, value: bool) -> None:
        self.owned.needs_gradient = bool(value)

    @property
    def is_part_of_loop(self) -> bool:
        return self.owned.is_part_of_loop

    @property
    def loop_id(self) -> int:
        return self.owned.loop_id

    @property
    def value_sharable(self) -> bool:
        return self.owned.value_sharable

    def mark_value_non_sharable(self) -> None:
        self.owned.value_sharable = False

    def mark_value_sharable(self) -> None:
        self.owned.value_sharable = True

    def is_output_needed_during_backprop(self) -> bool:
        return self.output_needed_during_backprop

    def output_used_in_computing_input_gradients(self) -> bool:
        return True

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return True

    def requires_pre_compute(self) -> bool:
        return False

    # --- Validation helpers ---

    def validate(self, is_final_pass: bool) -> None:
        self.validate_base(is_final_pass)

    def validate_base(self, is_final_pass: bool) -> None:
        for index, node in enumerate(self._inputs):
            if node is None:
                raise LogicError(f"{self._description()}: validation: input {index} is empty.")
            if is_final_pass and node.sample_layout.num_elements == 0:
                raise InvalidArgumentError(
                    f"{self._description()}: validation: input {index} ({node.name}) has 0 elements."
                )

    def infer_mb_layout_from_inputs_for_standard_case(self) -> None:
        layout: Optional[MBLayout] = None
        for node in self._inputs:
            if node is None or node.mb_layout is None:
                continue
            if layout is None:
                layout = node.mb_layout
            elif node.mb_layout is not layout and node.mb_layout != layout:
                raise InvalidArgumentError(
                    f"{self._description()}: inputs have different minibatch layouts."
                )
        self.link_to_mb_layout(layout)

    def validate_unary_map(self, is_final_pass: bool) -> None:
        self.validate_base(is_final_pass)
        self.infer_mb_layout_from_inputs_for_standard_case()
        self.set_dims(self.input(0).sample_layout, self.has_mb_layout)

    def validate_unary_reduce(self, is_final_pass: bool) -> None:
        self.validate_base(is_final_pass)
        self.link_to_mb_layout(None)
        self.set_dims(TensorShape(1), False)

    def validate_infer_input_dims_from(self, shape: TensorShape) -> None:
        """Leaves with unknown dims adopt `shape`; other nodes ignore the call."""

    def validate_infer_binary_input_dims(self) -> None:
        for index in (0, 1):
            node = self._inputs[index]
            other = self._inputs[1 - index]
            if node is None or other is None:
                continue
            if node.is_leaf() and node.sample_layout.num_elements == 0 and other.sample_layout.num_elements > 0:
                node.validate_infer_input_dims_from(other.sample_layout)

    def validate_binary_zip(self, is_final_pass: bool, allow_broadcast: bool = True) -> None:
        self.validate_base(is_final_pass)
        self.infer_mb_layout_from_inputs_for_standard_case()
        self.validate_infer_binary_input_dims()

        shape0 = self.input(0).sample_layout
        shape1 = self.input(1).sample_layout
        rank = max(shape0.rank, shape1.rank)
        dims0 = shape0.pad_to_rank(rank).dims
        dims1 = shape1.pad_to_rank(rank).dims
        if is_final_pass and not allow_broadcast and dims0 != dims1:
            raise InvalidArgumentError(
                f"{self._description()}: input dimensions [{shape0}] and [{shape1}] must be identical."
            )
        dims: List[int] = []
        for k, (d0, d1) in enumerate(zip(dims0, dims1)):
            if d0 == d1 or d1 == 1:
                dims.append(d0)
            elif d0 == 1:
                dims.append(d1)
            elif is_final_pass:
                raise InvalidArgumentError(
                    f"{self._description()}: input dimensions [{shape0}] and [{shape1}] "
                    f"are not compatible (dimension {k})."
                )
            else:
                dims.append(max(d0, d1))
        self.set_dims(TensorShape(dims), self.has_mb_layout)

    def validate_binary_reduce(self, is_final_pass: bool) -> None:
        self.validate_base(is_final_pass)
        self.validate_infer_binary_input_dims()
        self.link_to_mb_layout(None)
        if is_final_pass:
            n0 = self.input(0).sample_layout.num_elements
            n1 = self.input(1).sample_layout.num_elements
            if n0 != n1:
                raise InvalidArgumentError(
                    f"{self._description()}: inputs must have the same number of elements ({n0} vs {n1})."
                )
        self.set_dims(TensorShape(1), False)

    def determine_elementwise_tensor_rank(self) -> int:
        rank = self._sample_layout.rank
        for node in self._inputs:
            if node is not None:
                rank = max(rank, node.sample_layout.rank)
        return rank

    # --- Lifecycle hooks ---

    def begin_forward_prop(self) -> None:
        logger.debug("BeginForwardProp: %s", self._description())

    def end_forward_prop(self) -> None:
        logger.debug("EndForwardProp: %s", self._description())

    def begin_backprop(self) -> None:
        logger.debug("BeginBackprop: %s", self._description())

    def end_backprop(self) -> None:
        logger.debug("EndBackprop: %s", self._description())

    # --- Traversal ---

    @staticmethod
    def enumerate_nodes(
        roots: Iterable["NodeBase"],
        skip_pair_network: bool = False,
    ) -> List["NodeBase"]:
        """
        Post-order over everything reachable from `roots`: every node comes
        after all of its inputs. Reverse the result for backprop.
        """
        visited: Set[int] = set()
        order: List[NodeBase] = []

        def visit(node: NodeBase) -> None:
            stack: List[Tuple[NodeBase, int]] = [(node, 0)]
            visited.add(id(node))
            while stack:
                current, next_input = stack[-1]
                children = [] if (skip_pair_network and current.operation_name == "PairNetwork") else current.inputs
                if next_input < len(children):
                    stack[-1] = (current, next_input + 1)
                    child = children[next_input]
                    if child is not None and id(child) not in visited:
                        visited.add(id(child))
                        stack.append((child, 0))
                else:
                    stack.pop()
                    order.append(current)

        for root in roots:
            if id(root) not in visited:
                visit(root)
        return order

    def enumerate_arcs(self, visited: Optional[Set[int]] = None) -> List[Tuple["NodeBase", "NodeBase"]]:
        """
        (node, input) pairs reachable from this node, breadth first. `visited`
        holds node ids and is updated, so repeated calls can share it.
        """
        visited = set() if visited is None else visited
        arcs: List[Tuple[NodeBase, NodeBase]] = []
        queue: Deque[NodeBase] = deque([self])
        while queue:
            node = queue.popleft()
            if id(node) in visited:
                continue
            visited.add(id(node))
            for child in node.inputs:
                if child is None:
                    continue
                arcs.append((node, child))
                queue.append(child)
        return arcs

    def is_output_older_than_inputs(self) -> bool:
        return any(
            node is not None and self.time_stamp.is_older_than(node.time_stamp)
            for node in self._inputs
        )

    def is_older_than(self, other: "NodeBase") -> bool:
        return self.time_stamp.is_older_than(other.time_stamp)

    def is_equal_to(self, other: "NodeBase") -> bool:
        """Structural equality: same operation and recursively equal inputs."""
        return self._is_equal_to(other, {})

    def _is_equal_to(self, other: "NodeBase", memo: Dict[Tuple[int, int], bool]) -> bool:
        if self is other:
            return True
        if self.operation_name != other.operation_name or self.num_inputs != other.num_inputs:
            return False
        if self.name == other.name:
            return True
        if self.is_leaf() and other.is_leaf():
            return False
        key = (id(self), id(other))
        if key in memo:
            return memo[key]
        # assume equal while the pair is on the stack so cycles terminate
        memo[key] = True
        result = all(
            a is b or (a is not None and b is not None and a._is_equal_to(b, memo))
            for a, b in zip(self._inputs, other._inputs)
        )
        memo[key] = result
        return result

    # --- Copy ---

    def copy_to(self, target: "NodeBase", new_name: str, flags: CopyNodeFlags) -> None:
        if self.operation_name != target.operation_name:
            raise InvalidArgumentError(
                f"copy_to: target {target.name} is a {target.operation_name}, "
                f"source {self.name} is a {self.operation_name}."
            )
        if flags & CopyNodeFlags.CHILDREN:
            target._inputs = list(self._inputs)
        if flags & CopyNodeFlags.VALUE:
            target.device = self.device
            target.parameter_update_required = self.parameter_update_required
            target.name = new_name
            target._sample_layout = self._sample_layout
            target._mb_layout = self._mb_layout
            self.owned.copy_owned_state_to(target.owned)
            self.time_stamp.copy_time_stamp_to(target.time_stamp)

    # --- Presentation ---

    def _dims_string(self) -> str:
        return f"{self._sample_layout}{' x *' if self.has_mb_layout else ''}"

    def _description(self) -> str:
        return f"{self.name} {self.operation_name} operation"

    def describe_for_validation(self) -> str:
        args = ", ".join(
            "NULL" if node is None else f"{node.name}[{node._dims_string()}]"
            for node in self._inputs
        )
        return f"Validating --> {self.name} = {self.operation_name} ({args}) : [{self._dims_string()}]"

    def to_string(self) -> str:
        args = ", ".join("NULL" if node is None else node.name for node in self._inputs)
        return f"{self.name} : {self.operation_name} [{self._dims_string()}] ({args})"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.to_string()}>"
