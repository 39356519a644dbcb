import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from nodeflow import (
    ComputationNode,
    DelayedValueState,
    FutureValue,
    InputValue,
    LogicError,
    MBLayout,
    Network,
    PastValue,
    Plus,
    Tanh,
    TensorShape,
)


def _accumulator(delay_op):
    """H[t] = X[t] + H[t -/+ 1], i.e. a running sum along each sequence."""
    net = Network()
    net.add(
        ComputationNode(InputValue(1), "X"),
        ComputationNode(delay_op, "D"),
        ComputationNode(Plus(), "H"),
    )
    net.connect_later("H", "X", "D")
    net.connect_later("D", "H")
    net.resolve_pending()
    net.validate(["H"])
    return net


def test_loop_formation_records_membership():
    net = _accumulator(PastValue(initial_activation=0.0))
    loops = net.form_recurrent_loops(["H"])
    assert len(loops) == 1
    assert [n.name for n in loops[0].nested_nodes] == ["D", "H"]
    assert net["D"].loop_id == net["H"].loop_id == 0
    assert net["D"].owned.index_in_loop == 0
    assert net["H"].owned.index_in_loop == 1
    assert not net["X"].is_part_of_loop
    assert net["H"].sample_layout == TensorShape(1)
    assert net["D"].mb_layout is net.mb_layout


def test_past_value_running_sum_and_gradient():
    net = _accumulator(PastValue(initial_activation=0.0))
    net.bind({"X": torch.tensor([[1.0, 2.0, 3.0]])}, MBLayout.from_lengths([3]))
    out = net.forward(["H"])
    torch.testing.assert_close(out["H"], torch.tensor([[1.0, 3.0, 6.0]]))

    net.mark_needs_gradient(["H"], wrt=["X"])
    net.backward("H")
    # X[s] contributes to every H[t] with t >= s
    torch.testing.assert_close(net["X"].gradient, torch.tensor([[3.0, 2.0, 1.0]]))


def test_future_value_runs_backwards_in_time():
    net = _accumulator(FutureValue(initial_activation=0.0))
    net.bind({"X": torch.tensor([[1.0, 2.0, 3.0]])}, MBLayout.from_lengths([3]))
    out = net.forward(["H"])
    torch.testing.assert_close(out["H"], torch.tensor([[6.0, 5.0, 3.0]]))

    net.mark_needs_gradient(["H"], wrt=["X"])
    net.backward("H")
    torch.testing.assert_close(net["X"].gradient, torch.tensor([[1.0, 2.0, 3.0]]))


def test_initial_activation_at_sequence_start():
    net = _accumulator(PastValue())
    net.bind({"X": torch.tensor([[1.0, 1.0]])}, MBLayout.from_lengths([2]))
    out = net.forward(["H"])
    torch.testing.assert_close(out["H"], torch.tensor([[1.1, 2.1]]))


def test_parallel_sequences_with_gaps():
    net = _accumulator(PastValue(initial_activation=0.0))
    # columns are (t, s): t0 = [1, 10], t1 = [2, 20], t2 = [3, gap]
    x = torch.tensor([[1.0, 10.0, 2.0, 20.0, 3.0, float("nan")]])
    net.bind({"X": x}, MBLayout.from_lengths([3, 2]))
    out = net.forward(["H"])
    torch.testing.assert_close(out["H"][:, :5], torch.tensor([[1.0, 10.0, 3.0, 30.0, 6.0]]))


def test_history_carries_into_next_minibatch():
    net = _accumulator(PastValue(initial_activation=0.0))
    first = MBLayout(1, 2)
    first.add_sequence(0, 0, 0, 4)
    net.bind({"X": torch.tensor([[1.0, 2.0]])}, first)
    net.forward(["H"])
    state = net["D"].export_state()
    assert isinstance(state, DelayedValueState)
    torch.testing.assert_close(state.history, torch.tensor([[3.0]]))

    second = MBLayout(1, 2)
    second.add_sequence(0, 0, -2, 2)
    net.bind({"X": torch.tensor([[3.0, 4.0]])}, second)
    out = net.forward(["H"])
    torch.testing.assert_close(out["H"], torch.tensor([[6.0, 10.0]]))

    fresh = _accumulator(PastValue(initial_activation=0.0))
    fresh["D"].import_state(state)
    fresh.bind({"X": torch.tensor([[3.0, 4.0]])}, second)
    torch.testing.assert_close(fresh.forward(["H"])["H"], torch.tensor([[6.0, 10.0]]))


def test_repeated_forward_keeps_carried_history():
    net = _accumulator(PastValue(initial_activation=0.0))
    first = MBLayout(1, 2)
    first.add_sequence(0, 0, 0, 6)
    net.bind({"X": torch.tensor([[1.0, 2.0]])}, first)
    torch.testing.assert_close(net.forward(["H"])["H"], torch.tensor([[1.0, 3.0]]))
    torch.testing.assert_close(net.forward(["H"])["H"], torch.tensor([[1.0, 3.0]]))

    second = MBLayout(1, 2)
    second.add_sequence(0, 0, -2, 4)
    net.bind({"X": torch.tensor([[3.0, 4.0]])}, second)
    torch.testing.assert_close(net.forward(["H"])["H"], torch.tensor([[6.0, 10.0]]))
    torch.testing.assert_close(net.forward(["H"])["H"], torch.tensor([[6.0, 10.0]]))
    # the tail of the second minibatch waits for the third
    torch.testing.assert_close(net["D"].export_state().history, torch.tensor([[10.0]]))


def test_loop_without_delay_is_rejected():
    net = Network()
    net.add(
        ComputationNode(InputValue(1), "X"),
        ComputationNode(Tanh(), "T"),
        ComputationNode(Plus(), "H"),
    )
    net.connect("H", "X", "T")
    net.connect("T", "H")
    with pytest.raises(LogicError, match="no delay node"):
        net.form_recurrent_loops(["H"])


def test_mixed_delay_directions_are_rejected():
    net = Network()
    net.add(
        ComputationNode(InputValue(1), "X"),
        ComputationNode(PastValue(), "P"),
        ComputationNode(FutureValue(), "F"),
        ComputationNode(Plus(), "S"),
        ComputationNode(Plus(), "H"),
    )
    net.connect("P", "H")
    net.connect("F", "H")
    net.connect("S", "P", "F")
    net.connect("H", "X", "S")
    with pytest.raises(LogicError, match="mixes"):
        net.form_recurrent_loops(["H"])
