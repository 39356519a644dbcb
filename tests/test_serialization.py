import io
import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from nodeflow import (
    MODEL_VERSION_1,
    MODEL_VERSION_2,
    ComputationNode,
    InputValue,
    InvalidArgumentError,
    LearnableParameter,
    MBLayout,
    ModelStream,
    Network,
    PastValue,
    ReduceSum,
    TensorShape,
    Times,
    load_node,
    save_node,
)


def _stream():
    return ModelStream(io.BytesIO())


def test_parameter_round_trip():
    stream = _stream()
    w = ComputationNode(LearnableParameter(2, 3, seed=3), "W")
    save_node(w, stream)
    stream.fh.seek(0)
    loaded = load_node(stream)
    assert loaded.name == "W"
    assert loaded.operation_name == "LearnableParameter"
    assert loaded.sample_layout == TensorShape(2, 3)
    assert loaded.parameter_update_required
    assert not loaded.has_mb_layout
    torch.testing.assert_close(loaded.value, w.value)


def test_version_1_parameter_has_matrix_dims():
    stream = _stream()
    stream.write_str("LearnableParameter")
    stream.write_str("b")
    stream.write_bool(True)
    stream.write_tensor(torch.ones(3, 1))
    stream.fh.seek(0)
    loaded = load_node(stream, MODEL_VERSION_1)
    assert loaded.sample_layout == TensorShape(3, 1)
    assert loaded.value.shape == (3, 1)


def test_version_2_parameter_reads_shape_first():
    stream = _stream()
    stream.write_str("LearnableParameter")
    stream.write_str("b")
    stream.write_bool(True)
    stream.write_shape(TensorShape(3))
    stream.write_tensor(torch.ones(3, 1))
    stream.fh.seek(0)
    loaded = load_node(stream, MODEL_VERSION_2)
    assert loaded.sample_layout == TensorShape(3)


def test_unknown_operation_is_rejected():
    stream = _stream()
    stream.write_str("Convolution")
    stream.write_str("c")
    stream.fh.seek(0)
    with pytest.raises(InvalidArgumentError, match="Unknown operation"):
        load_node(stream)


def test_delay_parameters_round_trip():
    stream = _stream()
    save_node(ComputationNode(PastValue(time_step=2, initial_activation=0.5), "D"), stream)
    stream.fh.seek(0)
    loaded = load_node(stream)
    assert loaded.op.time_step == 2
    assert loaded.op.initial_activation == 0.5


def test_network_round_trip(tmp_path):
    net = Network()
    net.add(
        ComputationNode(LearnableParameter(2, 0, seed=1), "W"),
        ComputationNode(InputValue(3), "X"),
        ComputationNode(Times(), "T"),
        ComputationNode(ReduceSum(), "R"),
    )
    net.connect("T", "W", "X")
    net.connect("R", "T")
    net.validate()

    path = tmp_path / "model.bin"
    net.save(path)
    loaded = Network.load(path)

    assert list(loaded.nodes) == ["W", "X", "T", "R"]
    assert [n.name for n in loaded["T"].inputs] == ["W", "X"]
    assert loaded["X"].mb_layout is loaded.mb_layout
    torch.testing.assert_close(loaded["W"].value, net["W"].value)

    loaded.validate()
    x = torch.randn(3, 2)
    for network in (net, loaded):
        network.bind({"X": x}, MBLayout.from_lengths([2]))
    torch.testing.assert_close(loaded.forward()["R"], net.forward()["R"])
