# nodeflow/ops.py

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Optional

import torch

from .config import DEFAULT_HIDDEN_ACTIVATION, MODEL_VERSION_1
from .errors import InvalidArgumentError, LogicError
from .operations import (
    BinaryElementwiseOperation,
    NonLoopingOperation,
    Operation,
    OperationKind,
    RecurrentOperation,
    UnaryElementwiseOperation,
    register_operation,
)
from .shapes import FrameRange, MBLayout, TensorShape
from .state import DelayedValueState, NodeState

if TYPE_CHECKING:
    from .node import ComputationNode
    from .serialization import ModelStream

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Leaves
# ---------------------------------------------------------------------------


class LeafOperation(Operation):
    """Nodes without inputs; their value is set from outside the graph."""

    num_inputs = 0

    def forward(self, node: "ComputationNode", fr: FrameRange) -> None:
        pass

    def backprop_to(self, node: "ComputationNode", input_index: int, fr: FrameRange) -> None:
        raise LogicError(f"{node.name} {self.kind.value} operation has no inputs to backprop to.")

    def output_used_in_computing_input_gradients(self) -> bool:
        return False

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return False


@register_operation
class InputValue(LeafOperation):
    """
    Minibatch data. With `dynamic_axis` the graph manager links the node to
    the minibatch layout; otherwise the input is a single sample.
    """

    kind = OperationKind.INPUT_VALUE

    def __init__(self, *dims: int, dynamic_axis: bool = True) -> None:
        super().__init__()
        self.shape = TensorShape(*dims)
        self.dynamic_axis = bool(dynamic_axis)

    def clone(self) -> "InputValue":
        return InputValue(*self.shape.dims, dynamic_axis=self.dynamic_axis)

    def copy_state_to(self, other: Operation) -> None:
        other.shape = self.shape  # type: ignore[attr-defined]
        other.dynamic_axis = self.dynamic_axis  # type: ignore[attr-defined]

    def on_attach(self, node: "ComputationNode") -> None:
        node.mark_value_non_sharable()
        node.set_dims(self.shape, False)

    def validate(self, node: "ComputationNode", is_final_pass: bool) -> None:
        node.validate_base(is_final_pass)
        if is_final_pass and self.dynamic_axis and not node.has_mb_layout:
            raise InvalidArgumentError(f"{node.name} InputValue operation: no minibatch layout linked.")

    def save(self, node: "ComputationNode", stream: "ModelStream") -> None:
        stream.write_bool(self.dynamic_axis)
        stream.write_shape(node.sample_layout)

    def load(self, node: "ComputationNode", stream: "ModelStream", model_version: int) -> None:
        self.dynamic_axis = stream.read_bool()
        if model_version == MODEL_VERSION_1:
            rows = stream.read_int()
            cols = stream.read_int()
            shape = TensorShape(rows) if cols == 1 else TensorShape(rows, cols)
        else:
            shape = stream.read_shape()
        self.shape = shape
        node.set_dims(shape, node.has_mb_layout)

    def __repr__(self) -> str:
        return f"InputValue({', '.join(str(d) for d in self.shape.dims)}, dynamic_axis={self.dynamic_axis})"


@register_operation
class LearnableParameter(LeafOperation):
    """
    Trainable weights. A zero dimension is filled in from the first consumer
    that knows it (`infer_input_dims_from`), after which the value is
    initialized.
    """

    kind = OperationKind.LEARNABLE_PARAMETER
    INIT_METHODS = ("uniform", "gaussian", "fixed")

    def __init__(
        self,
        *dims: int,
        init: str = "uniform",
        init_value_scale: float = 1.0,
        init_value: float = 0.0,
        seed: Optional[int] = None,
    ) -> None:
        super().__init__()
        if init not in self.INIT_METHODS:
            raise ValueError(f"Unsupported init {init!r}; expected one of {self.INIT_METHODS}")
        self.shape = TensorShape(*dims)
        self.init = init
        self.init_value_scale = float(init_value_scale)
        self.init_value = float(init_value)
        self.seed = seed

    def clone(self) -> "LearnableParameter":
        return LearnableParameter(
            *self.shape.dims,
            init=self.init,
            init_value_scale=self.init_value_scale,
            init_value=self.init_value,
            seed=self.seed,
        )

    def copy_state_to(self, other: Operation) -> None:
        other.shape = self.shape  # type: ignore[attr-defined]
        other.init = self.init  # type: ignore[attr-defined]
        other.init_value_scale = self.init_value_scale  # type: ignore[attr-defined]
        other.init_value = self.init_value  # type: ignore[attr-defined]
        other.seed = self.seed  # type: ignore[attr-defined]

    def on_attach(self, node: "ComputationNode") -> None:
        node.parameter_update_required = True
        node.mark_value_non_sharable()
        node.set_dims(self.shape, False)
        if self.shape.num_elements > 0:
            self.initialize(node)

    def initialize(self, node: "ComputationNode") -> None:
        value = node.create_value_if_null()
        node.update_data_size(value)
        generator = None
        if self.seed is not None:
            generator = torch.Generator().manual_seed(int(self.seed))
        data = torch.empty(tuple(value.shape), dtype=node.dtype)
        if self.init == "fixed":
            data.fill_(self.init_value)
        elif self.init == "uniform":
            bound = 0.05 * self.init_value_scale
            data.uniform_(-bound, bound, generator=generator)
        else:
            fan_in = max(int(value.shape[1]), 1)
            data.normal_(0.0, 0.2 * self.init_value_scale / math.sqrt(fan_in), generator=generator)
        value.copy_(data.to(node.device))
        node.time_stamp.bump_eval_time_stamp()

    def infer_input_dims_from(self, node: "ComputationNode", shape: TensorShape) -> None:
        if node.sample_layout.num_elements > 0:
            return
        dims = list(node.sample_layout.dims)
        if not dims:
            dims = list(shape.dims)
        else:
            for k, d in enumerate(dims):
                if d == 0 and k < shape.rank:
                    dims[k] = shape[k]
        self.shape = TensorShape(dims)
        node.set_dims(self.shape, False)
        logger.info("%s: inferred dims [%s]", node.name, self.shape)
        if self.shape.num_elements > 0:
            self.initialize(node)

    def save(self, node: "ComputationNode", stream: "ModelStream") -> None:
        stream.write_bool(node.parameter_update_required)
        stream.write_shape(node.sample_layout)
        stream.write_tensor(node.value)

    def load(self, node: "ComputationNode", stream: "ModelStream", model_version: int) -> None:
        node.parameter_update_required = stream.read_bool()
        shape = None if model_version == MODEL_VERSION_1 else stream.read_shape()
        node.load_value(stream)
        if shape is not None:
            if shape.num_elements != node.value.numel():
                raise InvalidArgumentError(
                    f"{node.name} LearnableParameter: stored shape [{shape}] does not match the stored matrix."
                )
            node.set_dims(shape, False)
            node.update_data_size(node.value)
        self.shape = node.sample_layout

    def __repr__(self) -> str:
        return f"LearnableParameter({', '.join(str(d) for d in self.shape.dims)}, init={self.init!r})"


# ---------------------------------------------------------------------------
# Unary elementwise
# ---------------------------------------------------------------------------


@register_operation
class Tanh(UnaryElementwiseOperation):
    kind = OperationKind.TANH

    def function(self, x: torch.Tensor) -> torch.Tensor:
        return torch.tanh(x)

    def derivative(self, x: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
        return 1.0 - y * y

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return False


@register_operation
class Sigmoid(UnaryElementwiseOperation):
    kind = OperationKind.SIGMOID

    def function(self, x: torch.Tensor) -> torch.Tensor:
        return torch.sigmoid(x)

    def derivative(self, x: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
        return y * (1.0 - y)

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return False


@register_operation
class Negate(UnaryElementwiseOperation):
    kind = OperationKind.NEGATE

    def function(self, x: torch.Tensor) -> torch.Tensor:
        return torch.neg(x)

    def derivative(self, x: torch.Tensor, y: torch.Tensor) -> float:
        return -1.0

    def output_used_in_computing_input_gradients(self) -> bool:
        return False

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return False


@register_operation
class PairNetwork(UnaryElementwiseOperation):
    """Identity that marks the boundary to another network; traversal may stop here."""

    kind = OperationKind.PAIR_NETWORK

    def function(self, x: torch.Tensor) -> torch.Tensor:
        return x

    def derivative(self, x: torch.Tensor, y: torch.Tensor) -> float:
        return 1.0

    def output_used_in_computing_input_gradients(self) -> bool:
        return False

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return False


# ---------------------------------------------------------------------------
# Binary elementwise
# ---------------------------------------------------------------------------


@register_operation
class Plus(BinaryElementwiseOperation):
    kind = OperationKind.PLUS

    def function(self, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        return a + b

    def partial(self, input_index, a, b):
        return None


@register_operation
class Minus(BinaryElementwiseOperation):
    kind = OperationKind.MINUS

    def function(self, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        return a - b

    def partial(self, input_index, a, b):
        return None if input_index == 0 else -1.0


@register_operation
class ElementTimes(BinaryElementwiseOperation):
    kind = OperationKind.ELEMENT_TIMES

    def function(self, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        return a * b

    def partial(self, input_index, a, b):
        return b if input_index == 0 else a

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return True


# ---------------------------------------------------------------------------
# Matrix product & reductions
# ---------------------------------------------------------------------------


@register_operation
class Times(Operation):
    """
    W * X with W a layout-less `[m, n]` parameter and X `[n] x *` (or a
    layout-less `[n, k]` matrix). An unknown `n` in W is taken from X.
    """

    kind = OperationKind.TIMES
    num_inputs = 2

    def validate(self, node: "ComputationNode", is_final_pass: bool) -> None:
        node.validate_base(is_final_pass)
        weight, data = node.input(0), node.input(1)
        if weight.has_mb_layout:
            raise InvalidArgumentError(f"{node.name} Times operation: the first input must not have a minibatch layout.")

        if data.has_mb_layout:
            inner = data.sample_layout.num_elements
            out_cols = 1
        else:
            dims = data.sample_layout.dims
            inner = dims[0] if dims else 0
            out_cols = data.sample_layout.num_elements // inner if inner else 1

        w_dims = weight.sample_layout.dims
        if len(w_dims) == 2 and w_dims[1] == 0 and inner > 0:
            weight.validate_infer_input_dims_from(TensorShape(w_dims[0], inner))
            w_dims = weight.sample_layout.dims

        node.link_to_mb_layout(data.mb_layout)
        if is_final_pass:
            if len(w_dims) != 2:
                raise InvalidArgumentError(
                    f"{node.name} Times operation: the first input must be a matrix, got [{weight.sample_layout}]."
                )
            if w_dims[1] != inner:
                raise InvalidArgumentError(
                    f"{node.name} Times operation: inner dimensions differ ([{weight.sample_layout}] vs {inner})."
                )
        m = w_dims[0] if w_dims else 0
        shape = TensorShape(m) if out_cols == 1 else TensorShape(m, out_cols)
        node.set_dims(shape, node.has_mb_layout)

    def output_used_in_computing_input_gradients(self) -> bool:
        return False

    def forward(self, node: "ComputationNode", fr: FrameRange) -> None:
        weight = node.input(0).value_as_matrix()
        node.value_for(fr).copy_(weight @ node.input(1).value_for(fr))

    def backprop_to(self, node: "ComputationNode", input_index: int, fr: FrameRange) -> None:
        weight, data = node.input(0), node.input(1)
        if input_index == 0:
            # sums over frames: gaps must not contribute
            grad = node.masked_gradient_for(fr)
            weight.gradient_as_matrix().add_(grad @ data.masked_value_for(fr).t())
        else:
            data.gradient_for(fr).add_(weight.value_as_matrix().t() @ node.gradient_for(fr))


@register_operation
class ReduceSum(NonLoopingOperation):
    """Sum of all elements over all valid frames; output is a layout-less scalar."""

    kind = OperationKind.REDUCE_SUM
    num_inputs = 1

    def validate(self, node: "ComputationNode", is_final_pass: bool) -> None:
        node.validate_unary_reduce(is_final_pass)

    def output_used_in_computing_input_gradients(self) -> bool:
        return False

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return False

    def forward_non_looping(self, node: "ComputationNode") -> None:
        child = node.input(0)
        total = child.masked_value_for(FrameRange.all(child.mb_layout)).sum()
        node.value.fill_(total)

    def backprop_to_non_looping(self, node: "ComputationNode", input_index: int) -> None:
        child = node.input(input_index)
        fr = FrameRange.all(child.mb_layout)
        grad = child.gradient_for(fr)
        rows, cols = grad.shape
        grad.add_(node.const_ones(rows, cols) * node.gradient[0, 0])
        child.mask_missing_gradient_columns_to_zero(fr)


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


class DelayedValueOperation(RecurrentOperation):
    """
    Output at frame t is the input at frame `t + direction * time_step` of
    the same sequence. Frames whose source lies before the sequence start
    (or after its end) get the initial activation, unless the sequence
    continues from the previous minibatch and carried-over history exists.
    """

    num_inputs = 1

    def __init__(self, time_step: int = 1, initial_activation: Optional[float] = None) -> None:
        super().__init__()
        if int(time_step) < 1:
            raise ValueError("time_step must be >= 1")
        self.time_step = int(time_step)
        self.initial_activation = initial_activation
        # frames read by this minibatch, and frames staged for the next one
        self._history: Optional[torch.Tensor] = None
        self._carry: Optional[torch.Tensor] = None
        self._minibatch: Optional[int] = None

    def clone(self) -> "DelayedValueOperation":
        return type(self)(self.time_step, self.initial_activation)

    def copy_state_to(self, other: Operation) -> None:
        other.time_step = self.time_step  # type: ignore[attr-defined]
        other.initial_activation = self.initial_activation  # type: ignore[attr-defined]
        other._history = None if self._history is None else self._history.clone()  # type: ignore[attr-defined]
        other._carry = None if self._carry is None else self._carry.clone()  # type: ignore[attr-defined]
        other._minibatch = self._minibatch  # type: ignore[attr-defined]

    def validate(self, node: "ComputationNode", is_final_pass: bool) -> None:
        node.validate_unary_map(is_final_pass)
        if is_final_pass and not node.has_mb_layout:
            raise InvalidArgumentError(f"{node.name} {self.kind.value} operation: input has no minibatch layout.")

    def output_used_in_computing_input_gradients(self) -> bool:
        return False

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return False

    def _initial_value(self, node: "ComputationNode") -> float:
        if self.initial_activation is not None:
            return float(self.initial_activation)
        if node.context is not None:
            return float(node.context.config.initial_activation)
        return DEFAULT_HIDDEN_ACTIVATION

    def _layout(self, node: "ComputationNode") -> MBLayout:
        layout = node.mb_layout
        if layout is None:
            raise LogicError(f"{node.name} {self.kind.value} operation: no minibatch layout.")
        return layout

    def _frames(self, node: "ComputationNode", fr: FrameRange):
        if fr.is_all_frames():
            return range(node.num_time_steps)
        return [int(fr.time_index)]  # type: ignore[arg-type]

    def update_mb_size(self, node: "ComputationNode") -> None:
        """On the first pass over a new minibatch, the staged frames become the history."""
        serial = self._layout(node).serial
        if serial == self._minibatch:
            return
        if self._minibatch is not None:
            self._history = self._carry
            self._carry = None
        self._minibatch = serial

    def forward(self, node: "ComputationNode", fr: FrameRange) -> None:
        layout = self._layout(node)
        S, T = layout.num_parallel_sequences, layout.num_time_steps
        source = node.input(0).value
        out = node.value
        initial = self._initial_value(node)
        for t in self._frames(node, fr):
            src_t = t + self.recurrence_direction * self.time_step
            for s in range(S):
                info = layout.sequence_at(s, t)
                if info is None:
                    continue
                col = layout.column_index(s, t)
                if not info.t_begin <= src_t < info.t_end:
                    out[:, col].fill_(initial)
                elif 0 <= src_t < T:
                    out[:, col] = source[:, layout.column_index(s, src_t)]
                elif self._history is not None and src_t < 0:
                    out[:, col] = self._history[:, (src_t + self.time_step) * S + s]
                else:
                    out[:, col].fill_(initial)

    def backprop_to(self, node: "ComputationNode", input_index: int, fr: FrameRange) -> None:
        layout = self._layout(node)
        S, T = layout.num_parallel_sequences, layout.num_time_steps
        grad = node.gradient
        child_grad = node.input(input_index).gradient
        for t in self._frames(node, fr):
            src_t = t + self.recurrence_direction * self.time_step
            if not 0 <= src_t < T:
                continue
            for s in range(S):
                info = layout.sequence_at(s, t)
                if info is None or not info.t_begin <= src_t < info.t_end:
                    continue
                child_grad[:, layout.column_index(s, src_t)] += grad[:, layout.column_index(s, t)]

    def end_forward(self, node: "ComputationNode") -> None:
        self._carry = None

    # --- carried-over state ---

    def export_state(self, node: "ComputationNode") -> Optional[NodeState]:
        """State the next minibatch starts from."""
        history = self._history if self._minibatch is None else self._carry
        history = None if history is None else history.clone()
        return DelayedValueState(history=history, time_step=self.time_step)

    def import_state(self, node: "ComputationNode", state: NodeState) -> None:
        if not isinstance(state, DelayedValueState):
            raise InvalidArgumentError(f"{node.name}: cannot import {type(state).__name__} into {self.kind.value}.")
        if state.time_step != self.time_step:
            raise InvalidArgumentError(
                f"{node.name}: state has time_step {state.time_step}, node has {self.time_step}."
            )
        self._history = None if state.history is None else state.history.clone()
        self._carry = None
        self._minibatch = None

    def save(self, node: "ComputationNode", stream: "ModelStream") -> None:
        stream.write_int(self.time_step)
        stream.write_bool(self.initial_activation is not None)
        stream.write_float(0.0 if self.initial_activation is None else float(self.initial_activation))

    def load(self, node: "ComputationNode", stream: "ModelStream", model_version: int) -> None:
        self.time_step = stream.read_int()
        has_initial = stream.read_bool()
        initial = stream.read_float()
        self.initial_activation = initial if has_initial else None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(time_step={self.time_step}, initial_activation={self.initial_activation})"


@register_operation
class PastValue(DelayedValueOperation):
    kind = OperationKind.PAST_VALUE
    recurrence_direction = -1

    def end_forward(self, node: "ComputationNode") -> None:
        # keep the last frames of sequences that continue into the next minibatch
        layout = self._layout(node)
        S, T = layout.num_parallel_sequences, layout.num_time_steps
        continues = any(not info.is_gap and info.t_end > T for info in layout.sequences)
        if not continues or T < self.time_step:
            self._carry = None
            return
        source = node.input(0).value
        self._carry = source[:, (T - self.time_step) * S:T * S].clone()


@register_operation
class FutureValue(DelayedValueOperation):
    kind = OperationKind.FUTURE_VALUE
    recurrence_direction = 1
