import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from nodeflow import (
    ComputationNode,
    ElementTimes,
    ExecutionConfig,
    ExecutionContext,
    InputValue,
    LearnableParameter,
    LogicError,
    MBLayout,
    Negate,
    Network,
    Plus,
    ReduceSum,
    Tanh,
    TensorShape,
    Times,
)


def _broadcast_network():
    net = Network()
    net.add(
        ComputationNode(InputValue(3), "A"),
        ComputationNode(LearnableParameter(3, init="fixed", init_value=1.0), "B"),
        ComputationNode(Plus(), "C"),
    )
    net.connect("C", "A", "B")
    net.validate()
    return net


def test_broadcast_plus_forward_and_backward():
    net = _broadcast_network()
    c = net["C"]
    assert c.sample_layout == TensorShape(3)
    assert c.mb_layout is net.mb_layout

    # two time steps, one column each
    a = torch.tensor([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]).t()
    net.bind({"A": a}, MBLayout.from_lengths([2]))
    out = net.forward(["C"])
    torch.testing.assert_close(out["C"].t(), torch.tensor([[2.0, 3.0, 4.0], [5.0, 6.0, 7.0]]))
    assert c.value.shape[1] == net.mb_layout.num_cols

    net.mark_needs_gradient(["C"], wrt=["A"])
    net.backward("C")
    torch.testing.assert_close(net["A"].gradient, torch.ones(3, 2))
    torch.testing.assert_close(net["B"].gradient, torch.full((3, 1), 2.0))


def _accumulation_network(swap):
    net = Network()
    w = net.add(ComputationNode(LearnableParameter(3, seed=7), "W"))
    k = net.add(ComputationNode(LearnableParameter(3, init="fixed", init_value=2.0), "K"))
    p = net.add(ComputationNode(ElementTimes(), "P"))
    q = net.add(ComputationNode(Tanh(), "Q"))
    y = net.add(ComputationNode(Plus(), "Y"))
    r = net.add(ComputationNode(ReduceSum(), "R"))
    net.connect(p, w, k)
    net.connect(q, w)
    net.connect(y, *((q, p) if swap else (p, q)))
    net.connect(r, y)
    net.validate()
    net.mark_needs_gradient()
    net.forward()
    net.backward(r)
    return w


def test_gradient_accumulation_independent_of_consumer_order():
    first = _accumulation_network(swap=False)
    second = _accumulation_network(swap=True)
    torch.testing.assert_close(first.gradient, second.gradient)
    expected = 2.0 + 1.0 - torch.tanh(first.value) ** 2
    torch.testing.assert_close(first.gradient, expected)


def test_times_infers_weight_and_masks_gaps():
    net = Network()
    net.add(
        ComputationNode(LearnableParameter(2, 0, init="fixed", init_value=0.5), "W"),
        ComputationNode(InputValue(3), "X"),
        ComputationNode(Times(), "T"),
    )
    net.connect("T", "W", "X")
    net.validate()
    assert net["W"].sample_layout == TensorShape(2, 3)
    assert net["T"].sample_layout == TensorShape(2)

    layout = MBLayout.from_lengths([2, 1])
    x = torch.arange(12.0).reshape(3, 4)
    x[:, 3] = float("nan")
    net.bind({"X": x}, layout)
    net.mark_needs_gradient(["T"])
    net.forward(["T"])
    net.backward("T")

    expected = torch.ones(2, 3) @ torch.arange(12.0).reshape(3, 4)[:, :3].t()
    torch.testing.assert_close(net["W"].gradient, expected)


def test_reduce_sum_ignores_gaps():
    net = Network()
    net.add(ComputationNode(InputValue(2), "X"), ComputationNode(ReduceSum(), "R"))
    net.connect("R", "X")
    net.validate()
    x = torch.ones(2, 4)
    x[:, 3] = float("nan")
    net.bind({"X": x}, MBLayout.from_lengths([2, 1]))
    net.mark_needs_gradient(wrt=["X"])
    out = net.forward()
    assert out["R"].item() == pytest.approx(6.0)
    net.backward("R")
    expected = torch.ones(2, 4)
    expected[:, 3] = 0.0
    torch.testing.assert_close(net["X"].gradient, expected)


def _chain(context=None):
    net = Network(context)
    net.add(
        ComputationNode(InputValue(2), "X"),
        ComputationNode(Tanh(), "H"),
        ComputationNode(Negate(), "N"),
        ComputationNode(ReduceSum(), "R"),
    )
    net.connect("H", "X")
    net.connect("N", "H")
    net.connect("R", "N")
    net.validate()
    net.bind({"X": torch.randn(2, 3)}, MBLayout.from_lengths([3]))
    return net


def test_values_not_needed_for_backprop_are_released():
    net = _chain()
    net.forward()
    # Negate's output is not read by any gradient
    assert not net["N"].has_value
    # Tanh reads its own output in backprop
    assert net["H"].has_value
    held = [id(node.value) for node in net if node.has_value]
    assert len(held) == len(set(held))
    assert net.context.pool.num_available >= 1


def test_sharing_disabled_keeps_every_value():
    net = _chain(ExecutionContext(ExecutionConfig(share_node_values=False)))
    net.forward()
    assert all(node.has_value for node in net)


def test_backward_releases_intermediate_gradients():
    net = _chain()
    net.mark_needs_gradient(wrt=["X"])
    net.forward()
    net.backward("R")
    assert net["X"].has_gradient
    assert not net["H"].has_gradient
    assert not net["N"].has_gradient
    torch.testing.assert_close(net["X"].gradient, -(1.0 - torch.tanh(net["X"].value) ** 2))


def test_backward_requires_marking():
    net = _chain()
    net.forward()
    with pytest.raises(LogicError, match="mark_needs_gradient"):
        net.backward("R")


def test_forward_skips_up_to_date_nodes():
    net = _broadcast_network()
    net.bind({"A": torch.ones(3, 2)}, MBLayout.from_lengths([2]))
    net.forward(["C"])
    stamp = net["C"].time_stamp.eval_time_stamp
    net.forward(["C"])
    assert net["C"].time_stamp.eval_time_stamp == stamp
    net.bind({"A": torch.zeros(3, 2)})
    net.forward(["C"])
    assert net["C"].time_stamp.eval_time_stamp != stamp
    torch.testing.assert_close(net["C"].value, torch.ones(3, 2))


def test_two_phase_wiring_is_one_shot():
    net = Network()
    net.add(
        ComputationNode(InputValue(2), "A"),
        ComputationNode(InputValue(2), "B"),
        ComputationNode(Plus(), "C"),
    )
    net.connect_later("C", "A", "B")
    assert net["C"].num_inputs == 0
    net.resolve_pending()
    assert [n.name for n in net["C"].inputs] == ["A", "B"]
    net.connect_later("C", "B", "A")
    with pytest.raises(LogicError, match="already attached"):
        net.resolve_pending()


def test_duplicate_names_rejected():
    net = Network()
    net.add(ComputationNode(InputValue(2), "A"))
    with pytest.raises(ValueError):
        net.add(ComputationNode(InputValue(2), "A"))
    with pytest.raises(KeyError):
        net.node("missing")


def test_gap_nan_tracking():
    net = _chain(ExecutionContext(ExecutionConfig(track_gap_nans=True, share_node_values=False)))
    x = torch.ones(2, 4)
    x[:, 3] = float("nan")
    net.bind({"X": x}, MBLayout.from_lengths([2, 1]))
    net.forward()
    h = net["H"].value
    assert torch.isnan(h[:, 3]).all()
    assert not torch.isnan(h[:, :3]).any()

    bad = torch.ones(2, 4)
    bad[0, 0] = float("nan")
    net.bind({"X": bad})
    with pytest.raises(LogicError, match="NaN"):
        net.forward()


def test_duplicated_node_runs_forward_and_backward():
    net = Network(ExecutionContext(ExecutionConfig(share_node_values=False)))
    net.add(
        ComputationNode(LearnableParameter(2, 3, init="fixed", init_value=0.5), "W"),
        ComputationNode(InputValue(3), "X"),
        ComputationNode(Times(), "T"),
        ComputationNode(ReduceSum(), "R"),
    )
    net.connect("T", "W", "X")
    net.connect("R", "T")
    net.validate()
    x = torch.arange(6.0).reshape(3, 2)
    net.bind({"X": x}, MBLayout.from_lengths([2]))
    net.forward()

    # the copy holds a clone of T's value that the pool never issued
    copy = net.add(net["T"].duplicate("T2"))
    net.add(ComputationNode(ReduceSum(), "R2"))
    net.connect("R2", copy)
    net.validate(["R2"])
    net.mark_needs_gradient(["R2"])
    net.forward(["R2"])
    net.backward("R2")

    assert not copy.has_value
    assert not net.context.pool.is_available(net["T"].value)
    torch.testing.assert_close(net["W"].gradient, torch.ones(2, 2) @ x.t())
