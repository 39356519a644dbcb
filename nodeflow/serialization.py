# nodeflow/serialization.py

from __future__ import annotations

import io
import struct
from typing import TYPE_CHECKING, BinaryIO, Optional

import torch

from .config import CURRENT_MODEL_VERSION, FLOAT, Precision
from .errors import InvalidArgumentError
from .operations import operation_for_name
from .shapes import TensorShape

if TYPE_CHECKING:
    from .context import ExecutionContext
    from .node import ComputationNode


class ModelStream:
    """
    Binary model file: little-endian scalars, length-prefixed UTF-8 strings,
    and tensors written with `torch.save` as length-prefixed blobs.
    """

    def __init__(self, fh: BinaryIO) -> None:
        self.fh = fh

    # --- Writing ---

    def write_int(self, value: int) -> None:
        self.fh.write(struct.pack("<q", int(value)))

    def write_float(self, value: float) -> None:
        self.fh.write(struct.pack("<d", float(value)))

    def write_bool(self, value: bool) -> None:
        self.fh.write(struct.pack("<?", bool(value)))

    def write_str(self, value: str) -> None:
        data = value.encode("utf-8")
        self.write_int(len(data))
        self.fh.write(data)

    def write_shape(self, shape: TensorShape) -> None:
        self.write_int(shape.rank)
        for dim in shape.dims:
            self.write_int(dim)

    def write_tensor(self, tensor: torch.Tensor) -> None:
        buffer = io.BytesIO()
        torch.save(tensor.detach().cpu().contiguous(), buffer)
        data = buffer.getvalue()
        self.write_int(len(data))
        self.fh.write(data)

    # --- Reading ---

    def _read(self, size: int) -> bytes:
        data = self.fh.read(size)
        if len(data) != size:
            raise InvalidArgumentError(f"Unexpected end of model stream (wanted {size} bytes, got {len(data)}).")
        return data

    def read_int(self) -> int:
        return struct.unpack("<q", self._read(8))[0]

    def read_float(self) -> float:
        return struct.unpack("<d", self._read(8))[0]

    def read_bool(self) -> bool:
        return struct.unpack("<?", self._read(1))[0]

    def read_str(self) -> str:
        return self._read(self.read_int()).decode("utf-8")

    def read_shape(self) -> TensorShape:
        rank = self.read_int()
        return TensorShape([self.read_int() for _ in range(rank)])

    def read_tensor(self) -> torch.Tensor:
        data = self._read(self.read_int())
        return torch.load(io.BytesIO(data), map_location="cpu", weights_only=True)


def save_node(node: "ComputationNode", stream: ModelStream) -> None:
    node.save(stream)


def load_node(
    stream: ModelStream,
    model_version: int = CURRENT_MODEL_VERSION,
    device: Optional[torch.device] = None,
    precision: Precision = FLOAT,
    context: Optional["ExecutionContext"] = None,
) -> "ComputationNode":
    """Read a node written by save_node(): operation name, node name, then state."""
    from .node import ComputationNode

    if model_version > CURRENT_MODEL_VERSION or model_version < 1:
        raise InvalidArgumentError(f"Unsupported model version {model_version}")
    op_name = stream.read_str()
    name = stream.read_str()
    op = operation_for_name(op_name)()
    node = ComputationNode(op, name=name, device=device, precision=precision, context=context)
    node.load(stream, model_version)
    return node
