# nodeflow/node.py

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, List, Mapping, Optional, Sequence, Tuple

import torch

from . import masks
from .base import NodeBase
from .config import FLOAT, PRECISIONS, CopyNodeFlags, Precision
from .errors import InvalidArgumentError, LogicError
from .operations import Operation
from .pool import MatrixPool
from .shapes import FrameRange, TensorShape
from .state import NodeState

if TYPE_CHECKING:
    from .context import ExecutionContext
    from .serialization import ModelStream

logger = logging.getLogger(__name__)


class ComputationNode(NodeBase):
    """
    A node with typed value/gradient storage, computing through its Operation.

    Responsibilities:
      - Value and gradient matrices, sized from (sample shape, layout).
      - Frame-range views and gap masking.
      - The forward/backward lifecycle and the default backprop fan-out.
      - Pool hooks used by the graph manager to share buffers.
      - Copy, duplicate, save and load.

    Matrix storage: a node with a minibatch layout stores one column per
    (time step, parallel sequence), each column the row-major flattening of
    one sample. A node without a layout stores its single sample as a
    `[dims[0], num_elements / dims[0]]` matrix.
    """

    def __init__(
        self,
        op: Operation,
        name: Optional[str] = None,
        device: Optional[torch.device] = None,
        precision: Precision = FLOAT,
        context: Optional["ExecutionContext"] = None,
    ) -> None:
        super().__init__(name=name, device=device)
        self.op = op
        self.precision = precision
        self.context = context
        self._value: Optional[torch.Tensor] = None
        self._gradient: Optional[torch.Tensor] = None
        op.bind(self)

    @property
    def operation_name(self) -> str:
        return self.op.kind.value

    @property
    def kind(self):
        return self.op.kind

    @property
    def dtype(self) -> torch.dtype:
        return self.precision.dtype

    # --- Construction APIs ---

    @classmethod
    def from_config(
        cls,
        op: Operation,
        record: Mapping[str, Any],
        context: Optional["ExecutionContext"] = None,
    ) -> "ComputationNode":
        """
        Build a node from a config record with optional "name", "device",
        "precision" ("float" or "double") and "inputs" entries. Missing
        device and precision come from the context's config.
        """
        config = context.config if context is not None else None
        precision_name = record.get("precision")
        if precision_name is None:
            precision = config.default_precision if config is not None else FLOAT
        elif precision_name in PRECISIONS:
            precision = PRECISIONS[precision_name]
        else:
            raise InvalidArgumentError(f"Unknown precision {precision_name!r}")
        device = record.get("device")
        if device is None and config is not None:
            device = config.default_device
        node = cls(
            op,
            name=record.get("name"),
            device=device,
            precision=precision,
            context=context,
        )
        inputs = cls.inputs_from_config(record)
        if op.num_inputs is not None and len(inputs) != op.num_inputs:
            raise InvalidArgumentError(
                f"{node._description()}: expected {op.num_inputs} inputs, but {len(inputs)} were given."
            )
        node.attach_inputs(inputs)
        return node

    def attach_inputs(self, inputs: Sequence[Optional[NodeBase]]) -> None:
        """Replace the input list; arity and precision are checked."""
        expected = self.op.num_inputs
        if expected is not None and len(inputs) != expected:
            raise InvalidArgumentError(
                f"{self.operation_name} operation '{self.name}' expects {expected} inputs "
                f"(given: {len(inputs)})"
            )
        for node in inputs:
            self._up_cast(node)
        self._inputs = list(inputs)

    def set_input(self, index: int, node: Optional[NodeBase]) -> None:
        self._up_cast(node)
        super().set_input(index, node)

    def _up_cast(self, node: Optional[NodeBase]) -> None:
        if node is None:
            return
        precision = getattr(node, "precision", None)
        if precision is not None and precision != self.precision:
            raise InvalidArgumentError(
                f"{self._description()}: input {node.name} has precision {precision}, expected {self.precision}."
            )

    def input(self, index: int) -> "ComputationNode":
        return super().input(index)  # type: ignore[return-value]

    # --- Value & gradient storage ---

    @property
    def value(self) -> torch.Tensor:
        if self._value is None:
            raise LogicError(f"{self._description()}: value accessed before it was allocated.")
        return self._value

    @property
    def gradient(self) -> torch.Tensor:
        if self._gradient is None:
            raise LogicError(f"{self._description()}: gradient accessed before it was allocated.")
        return self._gradient

    @property
    def has_value(self) -> bool:
        return self._value is not None

    @property
    def has_gradient(self) -> bool:
        return self._gradient is not None

    def _new_matrix(self) -> torch.Tensor:
        return torch.empty(0, 0, dtype=self.dtype, device=self.device)

    def create_value_if_null(self) -> torch.Tensor:
        if self._value is None:
            self._value = self._new_matrix()
        return self._value

    def create_gradient_if_null(self) -> torch.Tensor:
        if self._gradient is None:
            self._gradient = self._new_matrix()
        return self._gradient

    def determine_data_size(self) -> Tuple[int, int]:
        if self.has_mb_layout:
            return self._sample_layout.num_elements, self._mb_layout.num_cols  # type: ignore[union-attr]
        dims = self._sample_layout.dims
        if not dims or dims[0] == 0:
            return 0, 0
        return dims[0], self._sample_layout.num_elements // dims[0]

    def update_data_size(self, matrix: torch.Tensor) -> None:
        rows, cols = self.determine_data_size()
        if tuple(matrix.shape) != (rows, cols):
            matrix.resize_(rows, cols)

    def verify_data_size(self, matrix: torch.Tensor) -> None:
        rows, cols = self.determine_data_size()
        if tuple(matrix.shape) != (rows, cols):
            raise LogicError(
                f"{self._description()}: matrix is {tuple(matrix.shape)}, expected [{self._dims_string()}] "
                f"= ({rows}, {cols})."
            )

    def update_function_values_size(self) -> None:
        self.update_data_size(self.create_value_if_null())

    def set_value(self, data: torch.Tensor) -> None:
        """Load externally produced data (e.g. a minibatch) into the value."""
        rows, cols = self.determine_data_size()
        if tuple(data.shape) != (rows, cols):
            raise InvalidArgumentError(
                f"{self._description()}: data is {tuple(data.shape)}, expected ({rows}, {cols})."
            )
        value = self.create_value_if_null()
        self.update_data_size(value)
        value.copy_(data.to(device=self.device, dtype=self.dtype))
        self.time_stamp.bump_eval_time_stamp()

    # --- Frame-range access ---

    def data_for(self, data: torch.Tensor, fr: FrameRange) -> torch.Tensor:
        try:
            return masks.data_for(data, fr, self.mb_layout)
        except LogicError as exc:
            raise LogicError(f"{exc} For {self._description()}.") from exc

    def value_for(self, fr: FrameRange) -> torch.Tensor:
        return self.data_for(self.value, fr)

    def gradient_for(self, fr: FrameRange) -> torch.Tensor:
        return self.data_for(self.gradient, fr)

    def masked_value_for(self, fr: FrameRange) -> torch.Tensor:
        self.mask_missing_value_columns_to_zero(fr)
        return self.value_for(fr)

    def masked_gradient_for(self, fr: FrameRange) -> torch.Tensor:
        self.mask_missing_gradient_columns_to_zero(fr)
        return self.gradient_for(fr)

    def value_as_matrix(self) -> torch.Tensor:
        """The value as a 2-D `[dims[0], rest]` matrix; only for layout-less nodes."""
        if self.has_mb_layout:
            raise LogicError(f"{self._description()}: value_as_matrix requires a node without minibatch layout.")
        return self.value

    def gradient_as_matrix(self) -> torch.Tensor:
        if self.has_mb_layout:
            raise LogicError(f"{self._description()}: gradient_as_matrix requires a node without minibatch layout.")
        return self.gradient

    def sample_tensor(self, data: torch.Tensor, rank: int) -> torch.Tensor:
        """View a frame slice as `[columns, *dims]`, dims padded to `rank`."""
        dims = self._sample_layout.pad_to_rank(rank).dims
        if self.has_mb_layout:
            return data.t().reshape(data.shape[1], *dims)
        return data.reshape(1, *dims)

    def write_sample_tensor(self, data: torch.Tensor, samples: torch.Tensor, accumulate: bool = False) -> None:
        """Inverse of sample_tensor(): store (or add) `samples` into `data`."""
        if self.has_mb_layout:
            update = samples.reshape(samples.shape[0], -1).t()
        else:
            update = samples.reshape(data.shape)
        if accumulate:
            data.add_(update)
        else:
            data.copy_(update)

    # --- Masking ---

    def mask_missing_value_columns_to_zero(self, fr: FrameRange) -> None:
        masks.mask_to_zero(self.value, self.mb_layout, fr)

    def mask_missing_gradient_columns_to_zero(self, fr: FrameRange) -> None:
        masks.mask_to_zero(self.gradient, self.mb_layout, fr)

    def invalidate_missing_value_columns(self, fr: FrameRange) -> None:
        masks.invalidate(self.value, self.mb_layout, fr)

    def invalidate_missing_gradient_columns(self, fr: FrameRange) -> None:
        masks.invalidate(self.gradient, self.mb_layout, fr)

    # --- Validation ---

    def validate(self, is_final_pass: bool) -> None:
        self.op.validate(self, is_final_pass)

    def validate_infer_input_dims_from(self, shape: TensorShape) -> None:
        self.op.infer_input_dims_from(self, shape)

    # --- Forward ---

    def _track_gap_nans(self) -> bool:
        return self.context is not None and self.context.config.track_gap_nans

    def begin_forward_prop(self) -> None:
        super().begin_forward_prop()
        if not self.is_leaf() and not self.requires_pre_compute():
            self.update_function_values_size()
        self.update_function_mb_size()
        self.verify_data_size(self.value)

    def update_function_mb_size(self) -> None:
        self.op.update_mb_size(self)

    def forward_prop(self, fr: FrameRange) -> None:
        self.op.forward(self, fr)

    def end_forward_prop(self) -> None:
        super().end_forward_prop()
        self.op.end_forward(self)
        if self._track_gap_nans():
            fr = FrameRange.all(self.mb_layout)
            self.mask_missing_value_columns_to_zero(fr)
            if masks.has_nan_outside_gaps(self.value, self.mb_layout, fr):
                raise LogicError(f"{self._description()}: forward prop produced NaN outside gaps.")
            self.invalidate_missing_value_columns(fr)

    # --- Backward ---

    def backprop(self, fr: FrameRange, children_in_this_loop: bool, children_in_outer_loop: bool) -> None:
        """
        Propagate this node's gradient into every input that needs one and
        belongs to the requested scope: the same loop (`children_in_this_loop`)
        or outside of it (`children_in_outer_loop`).
        """
        if fr.is_all_frames() and self.is_part_of_loop and children_in_this_loop:
            raise LogicError(
                f"{self._description()}: backprop called with whole-minibatch range on a node that is part of a loop."
            )
        for index, child in enumerate(self._inputs):
            if child is None or not child.needs_gradient:
                continue
            same_loop = child.loop_id == self.loop_id
            if not ((children_in_this_loop and same_loop) or (children_in_outer_loop and not same_loop)):
                continue
            if not self.needs_gradient:
                raise LogicError(
                    f"{self._description()}: needs_gradient is False but input {child.name} needs a gradient."
                )
            if self.is_part_of_loop and not same_loop and not fr.is_all_frames():
                raise LogicError(
                    f"{self._description()}: per-frame backprop into {child.name}, which is outside the loop."
                )
            child.lazy_zero_gradient()  # type: ignore[union-attr]
            self.backprop_to(index, fr)

    def backprop_to(self, input_index: int, fr: FrameRange) -> None:
        self.op.backprop_to(self, input_index, fr)

    def lazy_zero_gradient(self) -> None:
        """First touch in a backward pass: size and zero the gradient."""
        if not self.needs_gradient:
            raise LogicError(f"{self._description()}: lazy_zero_gradient called on a node that needs no gradient.")
        if self.gradient_initialized:
            return
        gradient = self.create_gradient_if_null()
        self.update_data_size(gradient)
        gradient.zero_()
        self.gradient_initialized = True

    def zero_gradients_of_inputs(self) -> None:
        for node in self._inputs:
            if node is not None:
                node.gradient_initialized = False

    def set_gradient_seed(self, seed: Optional[torch.Tensor] = None) -> None:
        """Initialize this node's gradient as the start of backprop (ones by default)."""
        gradient = self.create_gradient_if_null()
        self.update_data_size(gradient)
        if seed is None:
            gradient.fill_(1.0)
        else:
            if tuple(seed.shape) != tuple(gradient.shape):
                raise InvalidArgumentError(
                    f"{self._description()}: seed is {tuple(seed.shape)}, expected {tuple(gradient.shape)}."
                )
            gradient.copy_(seed.to(device=self.device, dtype=self.dtype))
        self.gradient_initialized = True

    def end_backprop(self) -> None:
        super().end_backprop()
        if self._track_gap_nans():
            fr = FrameRange.all(self.mb_layout)
            for node in self._inputs:
                if node is None or not node.needs_gradient or not node.has_gradient:  # type: ignore[union-attr]
                    continue
                node.mask_missing_gradient_columns_to_zero(fr)  # type: ignore[union-attr]
                if masks.has_nan_outside_gaps(node.gradient, node.mb_layout, fr):  # type: ignore[union-attr]
                    raise LogicError(
                        f"{self._description()}: backprop produced NaN in the gradient of {node.name}."
                    )

    def const_ones(self, rows: int, cols: int) -> torch.Tensor:
        if self.context is not None:
            return self.context.const_ones(rows, cols, self.device, self.dtype)
        return torch.ones(rows, cols, dtype=self.dtype, device=self.device)

    def output_used_in_computing_input_gradients(self) -> bool:
        return self.op.output_used_in_computing_input_gradients()

    def input_used_in_computing_input_gradients(self, input_index: int) -> bool:
        return self.op.input_used_in_computing_input_gradients(input_index)

    def requires_pre_compute(self) -> bool:
        return self.op.requires_pre_compute()

    @property
    def recurrence_direction(self) -> int:
        return self.op.recurrence_direction

    # --- Memory sharing ---

    @staticmethod
    def _give_back(pool: MatrixPool, tensor: torch.Tensor) -> None:
        # clones and loaded matrices are not the pool's; they are just dropped
        if pool.is_issued(tensor):
            pool.release(tensor)

    def request_matrices_before_forward_prop(self, pool: MatrixPool) -> None:
        if self._value is None:
            self._value = pool.request(self.dtype, self.device)

    def release_matrices_after_forward_prop(self, pool: MatrixPool) -> None:
        if (
            self._value is not None
            and not self.is_output_needed_during_backprop()
            and not self._value.is_sparse
            and self.value_sharable
        ):
            self._give_back(pool, self._value)
            self._value = None

    def allocate_gradient_matrices_for_inputs(self, pool: MatrixPool) -> None:
        for node in self._inputs:
            if node is not None and node.needs_gradient:
                node.request_matrices_before_backprop(pool)  # type: ignore[union-attr]

    def request_matrices_before_backprop(self, pool: MatrixPool) -> None:
        if self._gradient is None:
            self._gradient = pool.request(self.dtype, self.device)

    def release_matrices_after_backprop(self, pool: MatrixPool) -> None:
        if self.is_leaf() or self.requires_pre_compute():
            return
        if self._gradient is not None and not self._gradient.is_sparse:
            self._give_back(pool, self._gradient)
            self._gradient = None
        if (
            self.is_output_needed_during_backprop()
            and self._value is not None
            and not self._value.is_sparse
            and self.value_sharable
        ):
            self._give_back(pool, self._value)
            self._value = None

    # --- Stateful nodes ---

    def export_state(self) -> Optional[NodeState]:
        return self.op.export_state(self)

    def import_state(self, state: NodeState) -> None:
        self.op.import_state(self, state)

    # --- Copy ---

    def copy_to(self, target: NodeBase, new_name: str, flags: CopyNodeFlags) -> None:
        super().copy_to(target, new_name, flags)
        if flags & CopyNodeFlags.VALUE:
            if not isinstance(target, ComputationNode):
                raise InvalidArgumentError(f"copy_to: {target.name} is not a ComputationNode.")
            target.precision = self.precision
            target._value = None if self._value is None else self._value.detach().clone()
            target._gradient = None if self._gradient is None else self._gradient.detach().clone()
            self.op.copy_state_to(target.op)

    def duplicate(self, new_name: str = "", flags: CopyNodeFlags = CopyNodeFlags.ALL) -> "ComputationNode":
        name = new_name or self.name
        node = ComputationNode(
            self.op.clone(),
            name=name,
            device=self.device,
            precision=self.precision,
            context=self.context,
        )
        self.copy_to(node, name, flags)
        return node

    # --- Persistence ---

    def save(self, stream: "ModelStream") -> None:
        stream.write_str(self.operation_name)
        stream.write_str(self.name)
        self.op.save(self, stream)

    def load(self, stream: "ModelStream", model_version: int) -> None:
        self.op.load(self, stream, model_version)

    def load_value(self, stream: "ModelStream") -> None:
        """Read a matrix; the sample shape becomes `[rows, cols]`, no layout."""
        matrix = stream.read_tensor().to(device=self.device, dtype=self.dtype)
        if matrix.dim() != 2:
            raise InvalidArgumentError(f"{self._description()}: stored value has rank {matrix.dim()}, expected 2.")
        self._value = matrix.contiguous()
        self.link_to_mb_layout(None)
        self.set_dims(TensorShape(matrix.shape[0], matrix.shape[1]), False)


class FlowControlNode(NodeBase):
    """
    Execution unit that stands for a group of nodes (e.g. a recurrent loop).
    It has no storage and no operation; calls are forwarded to its members.
    """

    def __init__(self, nested_nodes: Sequence[ComputationNode], name: Optional[str] = None) -> None:
        super().__init__(name=name)
        self.nested_nodes: List[ComputationNode] = list(nested_nodes)

    @property
    def operation_name(self) -> str:
        return "FlowControl"

    @property
    def needs_gradient(self) -> bool:  # type: ignore[override]
        return any(node.needs_gradient for node in self.nested_nodes)

    def is_leaf(self) -> bool:
        return False

    def is_output_older_than_inputs(self) -> bool:
        return True

    def _for_each(self, fn: Callable[[ComputationNode], None]) -> None:
        for node in self.nested_nodes:
            fn(node)

    def request_matrices_before_forward_prop(self, pool: MatrixPool) -> None:
        self._for_each(lambda node: node.request_matrices_before_forward_prop(pool))

    def release_matrices_after_forward_prop(self, pool: MatrixPool) -> None:
        self._for_each(lambda node: node.release_matrices_after_forward_prop(pool))

    def allocate_gradient_matrices_for_inputs(self, pool: MatrixPool) -> None:
        self._for_each(lambda node: node.allocate_gradient_matrices_for_inputs(pool))

    def request_matrices_before_backprop(self, pool: MatrixPool) -> None:
        self._for_each(lambda node: node.request_matrices_before_backprop(pool))

    def release_matrices_after_backprop(self, pool: MatrixPool) -> None:
        self._for_each(lambda node: node.release_matrices_after_backprop(pool))

    def zero_gradients_of_inputs(self) -> None:
        self._for_each(lambda node: node.zero_gradients_of_inputs())

    def begin_forward_prop(self) -> None:
        self._for_each(lambda node: node.begin_forward_prop())

    def end_forward_prop(self) -> None:
        self._for_each(lambda node: node.end_forward_prop())

    def begin_backprop(self) -> None:
        self._for_each(lambda node: node.begin_backprop())

    def end_backprop(self) -> None:
        self._for_each(lambda node: node.end_backprop())

    def forward_prop(self, fr: FrameRange) -> None:
        raise NotImplementedError

    def backprop(self, fr: FrameRange, children_in_this_loop: bool, children_in_outer_loop: bool) -> None:
        raise NotImplementedError

    def describe_for_validation(self) -> str:
        return ""

    def to_string(self) -> str:
        members = ", ".join(node.name for node in self.nested_nodes)
        return f"{self.name} : {self.operation_name} ({members})"
