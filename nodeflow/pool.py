# nodeflow/pool.py

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Tuple

import torch

from .errors import LogicError

logger = logging.getLogger(__name__)

PoolKey = Tuple[torch.dtype, str]


class MatrixPool:
    """
    Reuse pool for value/gradient buffers of one graph.

    Responsibilities:
      - Hand out buffers per (dtype, device); a fresh empty buffer when no
        released one is available.
      - Guarantee at most one owner per buffer: a buffer is either issued or
        available, never both.
      - Refuse double release, foreign buffers and sparse buffers.

    Buffer identity is not preserved across request/release cycles; owners
    resize whatever they receive.
    """

    def __init__(self) -> None:
        self._free: Dict[PoolKey, List[torch.Tensor]] = defaultdict(list)
        self._issued: Dict[int, torch.Tensor] = {}
        self.num_allocations = 0

    @staticmethod
    def _key(dtype: torch.dtype, device: torch.device) -> PoolKey:
        return (dtype, str(torch.device(device)))

    def request(self, dtype: torch.dtype, device: torch.device) -> torch.Tensor:
        free = self._free[self._key(dtype, device)]
        if free:
            tensor = free.pop()
        else:
            tensor = torch.empty(0, 0, dtype=dtype, device=device)
            self.num_allocations += 1
        self._issued[id(tensor)] = tensor
        return tensor

    def release(self, tensor: torch.Tensor) -> None:
        if tensor.is_sparse:
            raise LogicError("MatrixPool.release: sparse buffers are not pooled.")
        if id(tensor) not in self._issued:
            if self.is_available(tensor):
                raise LogicError("MatrixPool.release: buffer released twice.")
            raise LogicError("MatrixPool.release: buffer was not issued by this pool.")
        del self._issued[id(tensor)]
        self._free[self._key(tensor.dtype, tensor.device)].append(tensor)

    def is_available(self, tensor: torch.Tensor) -> bool:
        return any(t is tensor for free in self._free.values() for t in free)

    def is_issued(self, tensor: torch.Tensor) -> bool:
        return self._issued.get(id(tensor)) is tensor

    def available(self) -> List[torch.Tensor]:
        return [t for free in self._free.values() for t in free]

    @property
    def num_issued(self) -> int:
        return len(self._issued)

    @property
    def num_available(self) -> int:
        return sum(len(free) for free in self._free.values())

    def clear(self) -> None:
        if self._issued:
            logger.warning("MatrixPool.clear: %d buffers are still issued", len(self._issued))
        self._free.clear()

    def __repr__(self) -> str:
        return f"MatrixPool(issued={self.num_issued}, available={self.num_available})"
