# nodeflow/network.py

from __future__ import annotations

import logging
import os
from typing import BinaryIO, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

import rustworkx as rx
import torch

from .base import NodeBase
from .config import CURRENT_MODEL_VERSION, PRECISIONS
from .context import ExecutionContext
from .errors import InvalidArgumentError, LogicError
from .node import ComputationNode, FlowControlNode
from .operations import OperationKind
from .pool import MatrixPool
from .serialization import ModelStream, load_node, save_node
from .shapes import FrameRange, MBLayout

logger = logging.getLogger(__name__)

NodeRef = Union[str, ComputationNode]


class SequenceLoopNode(FlowControlNode):
    """
    One strongly connected component of the graph, run frame by frame.

    Forward visits the frames in recurrence order (ascending for PastValue,
    descending for FutureValue) and evaluates every member per frame.
    Backward visits the frames in the opposite order, propagating within the
    loop only, then makes one whole-minibatch pass into inputs outside the
    loop.
    """

    def __init__(self, nested_nodes: Sequence[ComputationNode], loop_id: int, direction: int) -> None:
        super().__init__(nested_nodes, name=f"Loop{loop_id}")
        if direction not in (-1, 1):
            raise LogicError(f"SequenceLoopNode: invalid recurrence direction {direction}")
        self.direction = direction
        self.owned.loop_id = loop_id
        self.owned.is_part_of_loop = True

    @property
    def operation_name(self) -> str:
        return "SequenceLoop"

    @property
    def mb_layout(self) -> Optional[MBLayout]:
        return self.nested_nodes[0].mb_layout

    def _layout(self) -> MBLayout:
        layout = self.mb_layout
        if layout is None:
            raise LogicError(f"{self.name}: loop members have no minibatch layout.")
        return layout

    def _time_order(self, layout: MBLayout) -> List[int]:
        steps = list(range(layout.num_time_steps))
        return steps if self.direction < 0 else steps[::-1]

    def external_inputs(self) -> List[ComputationNode]:
        members = {id(node) for node in self.nested_nodes}
        return [
            child  # type: ignore[misc]
            for node in self.nested_nodes
            for child in node.inputs
            if child is not None and id(child) not in members
        ]

    def forward_prop(self, fr: FrameRange) -> None:
        if not fr.is_all_frames():
            raise LogicError(f"{self.name}: a loop is only run over the whole minibatch.")
        layout = self._layout()
        for t in self._time_order(layout):
            frame = FrameRange(layout, t)
            for node in self.nested_nodes:
                node.forward_prop(frame)

    def backprop(self, fr: FrameRange, children_in_this_loop: bool, children_in_outer_loop: bool) -> None:
        if not fr.is_all_frames():
            raise LogicError(f"{self.name}: a loop is only run over the whole minibatch.")
        layout = self._layout()
        for t in reversed(self._time_order(layout)):
            frame = FrameRange(layout, t)
            for node in reversed(self.nested_nodes):
                node.backprop(frame, True, False)
        whole = FrameRange.all(layout)
        for node in reversed(self.nested_nodes):
            node.backprop(whole, False, True)


class Network:
    """
    Owns a set of named nodes and drives them through a minibatch.

    Responsibilities:
      - Construction: add nodes and wire them, either immediately or in a
        second phase once every node exists (for cycles through delays).
      - Analysis: evaluation order, recurrent loops, gradient requirements,
        shape validation.
      - Execution: bind data, forward with buffer sharing, backward.
      - Persistence of every node.
    """

    def __init__(self, context: Optional[ExecutionContext] = None) -> None:
        self.context = context or ExecutionContext()
        self.nodes: Dict[str, ComputationNode] = {}
        # filled by bind(); every minibatch input observes this object
        self.mb_layout = MBLayout()
        self._pending: Dict[str, List[Optional[str]]] = {}
        self._resolved: Set[str] = set()
        self._loops: List[SequenceLoopNode] = []
        self._loops_key: Optional[Tuple[int, ...]] = None

    # --- Construction APIs ---

    def add(self, *nodes: ComputationNode) -> ComputationNode:
        """Add nodes; returns the first one so `x = net.add(ComputationNode(...))` reads naturally."""
        if not nodes:
            raise ValueError("add() needs at least one node.")
        for node in nodes:
            if node.name in self.nodes:
                raise ValueError(f"Node {node.name!r} already exists.")
            if node.context is None:
                node.context = self.context
            if node.kind is OperationKind.INPUT_VALUE and node.op.dynamic_axis:  # type: ignore[attr-defined]
                node.link_to_mb_layout(self.mb_layout)
            self.nodes[node.name] = node
        self._loops_key = None
        return nodes[0]

    def node(self, name: str) -> ComputationNode:
        try:
            return self.nodes[name]
        except KeyError:
            raise KeyError(f"Unknown node {name!r}") from None

    def __getitem__(self, name: str) -> ComputationNode:
        return self.node(name)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __iter__(self) -> Iterator[ComputationNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def _as_node(self, ref: NodeRef) -> ComputationNode:
        if isinstance(ref, ComputationNode):
            return ref
        return self.node(ref)

    def connect(self, node: NodeRef, *inputs: Optional[NodeRef]) -> ComputationNode:
        target = self._as_node(node)
        target.attach_inputs([None if ref is None else self._as_node(ref) for ref in inputs])
        self._loops_key = None
        return target

    def connect_later(self, node: NodeRef, *input_names: Optional[str]) -> None:
        """Record wiring to be made by resolve_pending(), once all nodes exist."""
        name = self._as_node(node).name
        self._pending[name] = list(input_names)

    def resolve_pending(self) -> None:
        for name, input_names in self._pending.items():
            if name in self._resolved:
                raise LogicError(f"{name}: inputs were already attached by an earlier resolve_pending().")
            self.connect(name, *input_names)
            self._resolved.add(name)
        self._pending.clear()

    def parameters(self) -> List[ComputationNode]:
        return [node for node in self.nodes.values() if node.parameter_update_required]

    # --- Analysis ---

    def _resolve_roots(self, roots: Optional[Iterable[NodeRef]]) -> List[ComputationNode]:
        if roots is not None:
            return [self._as_node(ref) for ref in roots]
        used = {id(child) for node in self.nodes.values() for child in node.inputs if child is not None}
        return [node for node in self.nodes.values() if id(node) not in used]

    def evaluation_order(self, roots: Optional[Iterable[NodeRef]] = None) -> List[ComputationNode]:
        return NodeBase.enumerate_nodes(self._resolve_roots(roots))  # type: ignore[return-value]

    def form_recurrent_loops(self, roots: Optional[Iterable[NodeRef]] = None) -> List[SequenceLoopNode]:
        """
        Find strongly connected components and record loop membership and
        in-loop evaluation order on every node.
        """
        order = self.evaluation_order(roots)
        position = {id(node): i for i, node in enumerate(order)}

        graph = rx.PyDiGraph()
        index_of = {id(node): graph.add_node(node) for node in order}
        for node in order:
            node.owned.purge_state_for_forming_recurrent_loops()
            node.owned.is_part_of_loop = False
            node.owned.visited_order = position[id(node)]
            for child in node.inputs:
                if child is not None:
                    graph.add_edge(index_of[id(child)], index_of[id(node)], None)

        components = [
            sorted((graph[i] for i in component), key=lambda n: position[id(n)])
            for component in rx.strongly_connected_components(graph)
        ]
        components.sort(key=lambda members: position[id(members[0])])

        loops: List[SequenceLoopNode] = []
        for members in components:
            if len(members) == 1:
                only = index_of[id(members[0])]
                if not graph.has_edge(only, only):
                    continue
            names = ", ".join(node.name for node in members)
            directions = {node.recurrence_direction for node in members if node.recurrence_direction}
            if not directions:
                raise LogicError(f"Loop ({names}) contains no delay node.")
            if len(directions) > 1:
                raise LogicError(f"Loop ({names}) mixes past and future delays.")
            loop_id = len(loops)
            ordered = self._order_loop(members)
            for index, node in enumerate(ordered):
                node.owned.loop_id = loop_id
                node.owned.is_part_of_loop = True
                node.owned.index_in_loop = index
            loops.append(SequenceLoopNode(ordered, loop_id, directions.pop()))
            logger.info("Loop %d: %s", loop_id, " -> ".join(node.name for node in ordered))

        self._loops = loops
        self._loops_key = tuple(id(node) for node in order)
        return loops

    @staticmethod
    def _order_loop(members: List[ComputationNode]) -> List[ComputationNode]:
        # Within one frame a delay node reads an earlier (or later) frame, so
        # its edge does not constrain the order.
        member_ids = {id(node) for node in members}
        ordered: List[ComputationNode] = []
        seen: Set[int] = set()

        def visit(node: ComputationNode) -> None:
            seen.add(id(node))
            if node.recurrence_direction == 0:
                for child in node.inputs:
                    if child is not None and id(child) in member_ids and id(child) not in seen:
                        visit(child)  # type: ignore[arg-type]
            ordered.append(node)

        for node in members:
            if id(node) not in seen:
                visit(node)
        return ordered

    def _plan(self, roots: List[ComputationNode]) -> List[NodeBase]:
        """Evaluation order with each loop collapsed into its SequenceLoopNode."""
        order = self.evaluation_order(roots)
        if self._loops_key != tuple(id(node) for node in order):
            self.form_recurrent_loops(roots)
        loop_of = {id(node): loop for loop in self._loops for node in loop.nested_nodes}
        last_member = {}
        for i, node in enumerate(order):
            if id(node) in loop_of:
                last_member[loop_of[id(node)].loop_id] = i
        plan: List[NodeBase] = []
        for i, node in enumerate(order):
            loop = loop_of.get(id(node))
            if loop is None:
                plan.append(node)
            elif last_member[loop.loop_id] == i:
                plan.append(loop)
        return plan

    def mark_needs_gradient(
        self,
        roots: Optional[Iterable[NodeRef]] = None,
        wrt: Iterable[NodeRef] = (),
    ) -> None:
        """
        A node needs a gradient when it is a learnable parameter, is listed in
        `wrt`, or has an input that needs one.
        """
        order = self.evaluation_order(roots)
        forced = {id(self._as_node(ref)) for ref in wrt}
        for node in order:
            node.needs_gradient = node.parameter_update_required or id(node) in forced
        changed = True
        while changed:
            changed = False
            for node in order:
                if node.needs_gradient:
                    continue
                if any(child is not None and child.needs_gradient for child in node.inputs):
                    node.needs_gradient = True
                    changed = True

    def validate(self, roots: Optional[Iterable[NodeRef]] = None) -> None:
        """
        Infer shapes: repeat non-final passes until dims settle (values flow
        around loops one pass at a time), then one final pass that checks.
        """
        order = self.evaluation_order(roots)
        for _ in range(len(order) + 1):
            before = [(node.sample_layout, node.has_mb_layout) for node in order]
            for node in order:
                node.validate(False)
            if before == [(node.sample_layout, node.has_mb_layout) for node in order]:
                break
        for node in order:
            logger.info(node.describe_for_validation())
            node.validate(True)
        self._mark_outputs_needed(order)

    def _mark_outputs_needed(self, order: List[ComputationNode]) -> None:
        share = self.context.config.share_node_values
        for node in order:
            node.output_needed_during_backprop = not share or node.output_used_in_computing_input_gradients()
        for node in order:
            for index, child in enumerate(node.inputs):
                if child is not None and node.input_used_in_computing_input_gradients(index):
                    child.output_needed_during_backprop = True

    # --- Execution ---

    def bind(self, batch: Mapping[str, torch.Tensor], layout: Optional[MBLayout] = None) -> None:
        """Load one minibatch: `layout` describes its columns, `batch` maps input names to data."""
        if layout is not None:
            self.mb_layout.copy_from(layout)
        for name, data in batch.items():
            node = self.node(name)
            if node.kind is not OperationKind.INPUT_VALUE:
                raise ValueError(f"bind: {name!r} is a {node.operation_name} node, not an InputValue.")
            node.set_value(data)

    @staticmethod
    def _unit_inputs(unit: NodeBase) -> List[NodeBase]:
        if isinstance(unit, SequenceLoopNode):
            return list(unit.external_inputs())
        return [child for child in unit.inputs if child is not None]

    def forward(self, roots: Optional[Iterable[NodeRef]] = None) -> Dict[str, torch.Tensor]:
        """
        Evaluate `roots` (default: every node nothing else consumes). Nodes
        whose value is newer than all of their inputs are skipped. A value
        not needed for backprop goes back to the pool once its last consumer
        has run.
        """
        root_nodes = self._resolve_roots(roots)
        plan = self._plan(root_nodes)
        pool = self.context.pool

        pending: Dict[int, int] = {}
        for unit in plan:
            for child in self._unit_inputs(unit):
                pending[id(child)] = pending.get(id(child), 0) + 1
        for root in root_nodes:
            pending[id(root)] = pending.get(id(root), 0) + 1

        for unit in plan:
            if isinstance(unit, SequenceLoopNode):
                self._forward_loop(unit, pool)
            elif not unit.is_leaf() and (not unit.has_value or unit.is_output_older_than_inputs()):  # type: ignore[attr-defined]
                unit.request_matrices_before_forward_prop(pool)  # type: ignore[attr-defined]
                unit.begin_forward_prop()
                unit.forward_prop(FrameRange.all(unit.mb_layout))  # type: ignore[attr-defined]
                unit.end_forward_prop()
                unit.time_stamp.bump_eval_time_stamp()
            for child in self._unit_inputs(unit):
                pending[id(child)] -= 1
                # loop members keep their values until the loop is done with them
                if pending[id(child)] == 0 and not child.is_part_of_loop:
                    child.release_matrices_after_forward_prop(pool)  # type: ignore[attr-defined]

        return {root.name: root.value for root in root_nodes}

    @staticmethod
    def _forward_loop(loop: SequenceLoopNode, pool: MatrixPool) -> None:
        loop.request_matrices_before_forward_prop(pool)
        loop.begin_forward_prop()
        loop.forward_prop(FrameRange.all(loop.mb_layout))
        loop.end_forward_prop()
        for node in loop.nested_nodes:
            node.time_stamp.bump_eval_time_stamp()

    def backward(self, root: NodeRef, seed: Optional[torch.Tensor] = None) -> None:
        """
        Backpropagate from `root` (gradient `seed`, ones by default) into
        every node that needs a gradient. Run forward() first.
        """
        root_node = self._as_node(root)
        if not root_node.needs_gradient:
            raise LogicError(f"backward: {root_node.name} needs no gradient; call mark_needs_gradient() first.")
        plan = self._plan([root_node])
        pool = self.context.pool

        for unit in plan:
            unit.zero_gradients_of_inputs()  # type: ignore[attr-defined]
        root_node.request_matrices_before_backprop(pool)
        root_node.set_gradient_seed(seed)

        for unit in reversed(plan):
            if unit.is_leaf() or not unit.needs_gradient:
                continue
            unit.allocate_gradient_matrices_for_inputs(pool)  # type: ignore[attr-defined]
            unit.begin_backprop()
            unit.backprop(FrameRange.all(unit.mb_layout), True, True)  # type: ignore[attr-defined]
            unit.end_backprop()
            if unit is not root_node:
                unit.release_matrices_after_backprop(pool)  # type: ignore[attr-defined]

    # --- Persistence ---

    def save(self, target: Union[str, os.PathLike, BinaryIO]) -> None:
        if isinstance(target, (str, os.PathLike)):
            with open(target, "wb") as fh:
                self.save(fh)
            return
        stream = ModelStream(target)
        nodes = list(self.nodes.values())
        stream.write_int(CURRENT_MODEL_VERSION)
        stream.write_int(len(nodes))
        for node in nodes:
            stream.write_str(node.precision.name)
            save_node(node, stream)
        for node in nodes:
            stream.write_str(node.name)
            stream.write_int(node.num_inputs)
            for child in node.inputs:
                stream.write_str("" if child is None else child.name)
        logger.info("Saved %d nodes (model version %d)", len(nodes), CURRENT_MODEL_VERSION)

    @classmethod
    def load(
        cls,
        source: Union[str, os.PathLike, BinaryIO],
        context: Optional[ExecutionContext] = None,
    ) -> "Network":
        if isinstance(source, (str, os.PathLike)):
            with open(source, "rb") as fh:
                return cls.load(fh, context)
        stream = ModelStream(source)
        network = cls(context)
        model_version = stream.read_int()
        count = stream.read_int()
        for _ in range(count):
            precision_name = stream.read_str()
            if precision_name not in PRECISIONS:
                raise InvalidArgumentError(f"Unknown precision {precision_name!r} in model stream.")
            node = load_node(
                stream,
                model_version,
                device=network.context.config.default_device,
                precision=PRECISIONS[precision_name],
                context=network.context,
            )
            network.add(node)
        for _ in range(count):
            name = stream.read_str()
            input_names = [stream.read_str() for _ in range(stream.read_int())]
            if input_names:
                network.connect(name, *[n or None for n in input_names])
        logger.info("Loaded %d nodes (model version %d)", count, model_version)
        return network
