# nodeflow/errors.py

from __future__ import annotations


class LogicError(RuntimeError):
    """
    An internal contract was broken (graph-construction or caller bug).

    Examples: resize mismatch, backprop on an unsupported frame range,
    a loop-only helper called on a node without a minibatch layout.
    """


class InvalidArgumentError(ValueError):
    """
    A malformed external request: wrong input arity, incompatible
    operation kinds, precision mismatch when attaching an input.
    """
