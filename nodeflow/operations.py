# nodeflow/operations.py

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Dict, Optional, Tuple, Type, Union

import torch

from .errors import InvalidArgumentError, LogicError
from .shapes import FrameRange, TensorShape
from .state import NodeState

if TYPE_CHECKING:
    from .node import ComputationNode
    from .serialization import ModelStream


class OperationKind(enum.Enum):
    """Closed set of operation tags; `kind.value` is the persisted operation name."""

    INPUT_VALUE = "InputValue"
    LEARNABLE_PARAMETER = "LearnableParameter"
    PLUS = "Plus"
    MINUS = "Minus"
    ELEMENT_TIMES = "ElementTimes"
    NEGATE = "Negate"
    TANH = "Tanh"
    SIGMOID = "Sigmoid"
    TIMES = "Times"
    REDUCE_SUM = "ReduceSum"
    PAST_VALUE = "PastValue"
    FUTURE_VALUE = "FutureValue"
    PAIR_NETWORK = "PairNetwork"


OPERATIONS: Dict[str, Type["Operation"]] = {}


def register_operation(cls: Type["Operation"]) -> Type["Operation"]:
    """Class decorator: make an operation loadable by its persisted name."""
    name = cls.kind.value
    if name in OPERATIONS:
        raise ValueError(f"Operation {name!r} registered twice")
    OPERATIONS[name] = cls
    return cls


def operation_for_name(name: str) -> Type["Operation"]:
    try:
        return OPERATIONS[name]
    except KeyError:
        raise InvalidArgumentError(f"Unknown operation {name!r}") from None


class Operation:
    """
    What a node computes. One instance per node.

    Responsibilities:
      - Shape inference (`validate`), called with the owning node.
      - Forward and per-input backward computation over a FrameRange.
      - Declaring which values its gradient needs, for buffer sharing.
      - Persisting its own parameters (`save`/`load`).

    The node owns storage, layout and the lifecycle; operations only read
    and write through the node's accessors.
    """

    kind: OperationKind
    # fixed arity checked by attach_inputs(); None for variadic operations
    num_inputs: Optional[int] = None
    # 0: not recurrent, -1: reads earlier frames, +1: reads later frames
    recurrence_direction: int = 0

    def __init__(self) -> None:
        self._bound = False

    # --- Binding -------------------------------------------------------------

    def bind(self, node: "ComputationNode") -> None:
        if self._bound:
            raise LogicError(f"{self.kind.value} operation is already bound to a node.")
        self._bound = True
        self.on_attach(node)

    def on_attach(self, node: "ComputationNode") -> None:
        """Configure node flags and initial dims; leaves override this."""

    def clone(self) -> "Operation":
        """A fresh, unbound operation of the same kind and configuration."""
        return type(self)()

    def copy_state_to(self, other: "Operation") -> None:
        """Copy per-operation parameters into `other` (same kind)."""

    # --- Shape inference -----------------------------------------------------

    def validate(self, node: "ComputationNode", is_final_pass: bool) -> None:
        node.validate_base(is_final_pass)

    def infer_input_dims_from(self, node: "ComputationNode", shape: TensorShape) -> None:
        """Called on a leaf with unknown dims by a consumer that knows them."""

    # --- Computation ---------------------------------------------------------

    def update_mb_size(self, node: "ComputationNode") -> None:
        """Resize operation-owned temporaries to the current minibatch."""

    def forward(self, node: "ComputationNode", fr: FrameRange) -> None:
        raise NotImplementedError(f"{self.kind.value} does not implement forward()")

    def backprop_to(self, node: "ComputationNode", input_index: int, fr: FrameRange) -> None:
        raise NotImplementedError(f"{self.kind.value} does not implement backprop_to()")

    def end_forward(self, node: "ComputationNode") -> None:
        """Called once per minibatch after the last forward() call."""

    def output_used_in_computing_input_gradients(self) -> bool:
        return True

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return True

    def requires_pre_compute(self) -> bool:
        return False

    # --- State export (stateful operations only) -----------------------------

    def export_state(self, node: "ComputationNode") -> Optional[NodeState]:
        return None

    def import_state(self, node: "ComputationNode", state: NodeState) -> None:
        raise LogicError(f"{self.kind.value} operation has no importable state.")

    # --- Persistence ---------------------------------------------------------

    def save(self, node: "ComputationNode", stream: "ModelStream") -> None:
        """Write operation state; kind and node name are written by the node."""

    def load(self, node: "ComputationNode", stream: "ModelStream", model_version: int) -> None:
        """Read what save() wrote; kind and node name are already consumed."""

    def describe(self) -> str:
        return self.kind.value

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


# ---------------------------------------------------------------------------
# Elementwise helpers
# ---------------------------------------------------------------------------


def reduce_grad_for_broadcast(grad: torch.Tensor, target_shape: Tuple[int, ...]) -> torch.Tensor:
    """Sum `grad` over the dimensions in which `target_shape` was broadcast."""
    if tuple(grad.shape) == tuple(target_shape):
        return grad
    padded_target_shape = (1,) * (grad.dim() - len(target_shape)) + tuple(target_shape)
    sum_dims = [
        i
        for i, (grad_dim, target_dim) in enumerate(zip(grad.shape, padded_target_shape))
        if target_dim == 1 and grad_dim > 1
    ]
    if sum_dims:
        grad = grad.sum(dim=sum_dims, keepdim=True)
    return grad.reshape(target_shape)


def gradient_source_for(node: "ComputationNode", input_index: int, fr: FrameRange) -> torch.Tensor:
    """
    The node's gradient slice to propagate into an input. When the input has
    fewer columns the propagation sums over time, so gaps are zeroed first.
    """
    child = node.input(input_index)
    if child.reduces_in_time_wrt(node):
        return node.masked_gradient_for(fr)
    return node.gradient_for(fr)


# ---------------------------------------------------------------------------
# Policy bases
# ---------------------------------------------------------------------------


class UnaryElementwiseOperation(Operation):
    """
    y = f(x) applied per element; output shape and layout follow the input.

    Subclasses provide `function(x)` and `derivative(x, y)`.
    """

    num_inputs = 1

    def validate(self, node: "ComputationNode", is_final_pass: bool) -> None:
        node.validate_unary_map(is_final_pass)

    def function(self, x: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def derivative(self, x: torch.Tensor, y: torch.Tensor) -> Union[torch.Tensor, float]:
        raise NotImplementedError

    def forward(self, node: "ComputationNode", fr: FrameRange) -> None:
        out = node.value_for(fr)
        out.copy_(self.function(node.input(0).value_for(fr)))

    def backprop_to(self, node: "ComputationNode", input_index: int, fr: FrameRange) -> None:
        child = node.input(input_index)
        x = child.value_for(fr) if self.input_used_in_computing_input_gradients(0) else None
        y = node.value_for(fr) if self.output_used_in_computing_input_gradients() else None
        child.gradient_for(fr).add_(node.gradient_for(fr) * self.derivative(x, y))


class BinaryElementwiseOperation(Operation):
    """
    z = f(a, b) with broadcasting. A layout-less operand is one sample that
    broadcasts over every column; sample dimensions broadcast where one side
    is 1 (shapes of lower rank are padded with trailing 1s).

    Subclasses provide `function(a, b)` and `partial(input_index, a, b)`;
    `partial` returning None means the local derivative is one.
    """

    num_inputs = 2
    allow_broadcast = True

    def validate(self, node: "ComputationNode", is_final_pass: bool) -> None:
        node.validate_binary_zip(is_final_pass, self.allow_broadcast)

    def output_used_in_computing_input_gradients(self) -> bool:
        return False

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return False

    def function(self, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def partial(
        self,
        input_index: int,
        a: torch.Tensor,
        b: torch.Tensor,
    ) -> Optional[Union[torch.Tensor, float]]:
        raise NotImplementedError

    def _operands(self, node: "ComputationNode", fr: FrameRange, rank: int) -> Tuple[torch.Tensor, torch.Tensor]:
        a = node.input(0)
        b = node.input(1)
        return (
            a.sample_tensor(a.value_for(fr), rank),
            b.sample_tensor(b.value_for(fr), rank),
        )

    def forward(self, node: "ComputationNode", fr: FrameRange) -> None:
        rank = node.determine_elementwise_tensor_rank()
        a, b = self._operands(node, fr, rank)
        result = self.function(a, b)
        out = node.value_for(fr)
        if node.has_mb_layout:
            result = result.expand(out.shape[1], *result.shape[1:])
        node.write_sample_tensor(out, result)

    def backprop_to(self, node: "ComputationNode", input_index: int, fr: FrameRange) -> None:
        rank = node.determine_elementwise_tensor_rank()
        child = node.input(input_index)
        grad = node.sample_tensor(gradient_source_for(node, input_index, fr), rank)
        if self.input_used_in_computing_input_gradients(input_index) or self.input_used_in_computing_input_gradients(1 - input_index):
            a, b = self._operands(node, fr, rank)
        else:
            a = b = None  # type: ignore[assignment]
        local = self.partial(input_index, a, b)
        contribution = grad if local is None else grad * local
        child_grad = child.gradient_for(fr)
        child_cols = child_grad.shape[1] if child.has_mb_layout else 1
        target = (child_cols,) + child.sample_layout.pad_to_rank(rank).dims
        child.write_sample_tensor(
            child_grad,
            reduce_grad_for_broadcast(contribution, target),
            accumulate=True,
        )


class NonLoopingOperation(Operation):
    """
    Operations that only compute over the whole minibatch (reductions and
    other operations that mix time steps). Any per-frame call is a logic error.
    """

    def forward(self, node: "ComputationNode", fr: FrameRange) -> None:
        if not fr.is_all_frames():
            raise LogicError(f"{self.kind.value} node should never be in a loop.")
        self.forward_non_looping(node)

    def backprop_to(self, node: "ComputationNode", input_index: int, fr: FrameRange) -> None:
        if not fr.is_all_frames():
            raise LogicError(f"{self.kind.value} node should never be in a loop.")
        self.backprop_to_non_looping(node, input_index)

    def forward_non_looping(self, node: "ComputationNode") -> None:
        raise NotImplementedError

    def backprop_to_non_looping(self, node: "ComputationNode", input_index: int) -> None:
        raise NotImplementedError


class RecurrentOperation(Operation):
    """
    Marker base for operations that connect different time steps; the loop
    driver reads `recurrence_direction` to choose the frame order.
    """

    recurrence_direction = -1

