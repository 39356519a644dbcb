# nodeflow/__init__.py

from .errors import LogicError, InvalidArgumentError
from .config import (
    ExecutionConfig,
    CopyNodeFlags,
    Precision,
    FLOAT,
    DOUBLE,
    MODEL_VERSION_1,
    MODEL_VERSION_2,
    CURRENT_MODEL_VERSION,
    DEFAULT_HIDDEN_ACTIVATION,
)
from .shapes import TensorShape, MBLayout, SequenceInfo, FrameRange
from .timestamp import TimeStamp, TimeStampCounter
from .state import OwnedNodeState, NodeState, DelayedValueState
from .pool import MatrixPool
from .context import ExecutionContext
from .operations import Operation, OperationKind
from .base import NodeBase
from .node import ComputationNode, FlowControlNode
from .ops import (
    InputValue,
    LearnableParameter,
    Tanh,
    Sigmoid,
    Negate,
    PairNetwork,
    Plus,
    Minus,
    ElementTimes,
    Times,
    ReduceSum,
    PastValue,
    FutureValue,
)
from .serialization import ModelStream, save_node, load_node
from .network import Network, SequenceLoopNode
from . import masks

__all__ = [
    "LogicError",
    "InvalidArgumentError",
    "ExecutionConfig",
    "CopyNodeFlags",
    "Precision",
    "FLOAT",
    "DOUBLE",
    "MODEL_VERSION_1",
    "MODEL_VERSION_2",
    "CURRENT_MODEL_VERSION",
    "DEFAULT_HIDDEN_ACTIVATION",
    "TensorShape",
    "MBLayout",
    "SequenceInfo",
    "FrameRange",
    "TimeStamp",
    "TimeStampCounter",
    "OwnedNodeState",
    "NodeState",
    "DelayedValueState",
    "MatrixPool",
    "ExecutionContext",
    "Operation",
    "OperationKind",
    "NodeBase",
    "ComputationNode",
    "FlowControlNode",
    "InputValue",
    "LearnableParameter",
    "Tanh",
    "Sigmoid",
    "Negate",
    "PairNetwork",
    "Plus",
    "Minus",
    "ElementTimes",
    "Times",
    "ReduceSum",
    "PastValue",
    "FutureValue",
    "ModelStream",
    "save_node",
    "load_node",
    "Network",
    "SequenceLoopNode",
    "masks",
]
