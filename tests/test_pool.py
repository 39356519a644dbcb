import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from nodeflow import ComputationNode, LearnableParameter, LogicError, MatrixPool, Tanh

CPU = torch.device("cpu")


def test_request_release_reuse():
    pool = MatrixPool()
    a = pool.request(torch.float32, CPU)
    assert pool.is_issued(a)
    assert pool.num_issued == 1
    pool.release(a)
    assert pool.is_available(a)
    assert not pool.is_issued(a)
    b = pool.request(torch.float32, CPU)
    assert b is a
    c = pool.request(torch.float64, CPU)
    assert c is not a
    assert pool.num_allocations == 2


def test_release_errors():
    pool = MatrixPool()
    a = pool.request(torch.float32, CPU)
    pool.release(a)
    with pytest.raises(LogicError, match="twice"):
        pool.release(a)
    with pytest.raises(LogicError, match="not issued"):
        pool.release(torch.empty(0, 0))
    with pytest.raises(LogicError, match="sparse"):
        pool.release(torch.eye(2).to_sparse())


def _node_with_value(pool):
    node = ComputationNode(Tanh(), "T")
    node.request_matrices_before_forward_prop(pool)
    return node


def test_release_after_forward_respects_flags():
    pool = MatrixPool()

    needed = _node_with_value(pool)
    needed.output_needed_during_backprop = True
    needed.release_matrices_after_forward_prop(pool)
    assert needed.has_value

    pinned = _node_with_value(pool)
    pinned.output_needed_during_backprop = False
    pinned.mark_value_non_sharable()
    pinned.release_matrices_after_forward_prop(pool)
    assert pinned.has_value

    sparse = ComputationNode(Tanh(), "S")
    sparse._value = torch.eye(2).to_sparse()
    sparse.output_needed_during_backprop = False
    sparse.release_matrices_after_forward_prop(pool)
    assert sparse.has_value

    free = _node_with_value(pool)
    held = free.value
    free.output_needed_during_backprop = False
    free.release_matrices_after_forward_prop(pool)
    assert not free.has_value
    assert pool.is_available(held)


def test_non_sharable_value_never_reaches_pool():
    pool = MatrixPool()
    node = ComputationNode(Tanh(), "T")
    node.attach_inputs([ComputationNode(LearnableParameter(2, seed=0), "a")])
    node.request_matrices_before_forward_prop(pool)
    node.mark_value_non_sharable()

    node.output_needed_during_backprop = False
    node.release_matrices_after_forward_prop(pool)
    node.output_needed_during_backprop = True
    node.request_matrices_before_backprop(pool)
    node.release_matrices_after_backprop(pool)

    assert node.has_value
    assert not node.has_gradient
    assert pool.num_available == 1
    assert all(t is not node.value for t in pool.available())
