# nodeflow/context.py

from __future__ import annotations

from typing import Dict, Optional, Tuple

import torch

from .config import ExecutionConfig
from .pool import MatrixPool


class ExecutionContext:
    """
    Per-graph execution state: the config, the buffer pool and the
    constant-ones cache used by reduction gradients.
    """

    def __init__(
        self,
        config: Optional[ExecutionConfig] = None,
        pool: Optional[MatrixPool] = None,
    ) -> None:
        self.config = config or ExecutionConfig()
        self.pool = pool or MatrixPool()
        self._const_ones: Dict[Tuple[int, int, torch.dtype, str], torch.Tensor] = {}

    def const_ones(
        self,
        rows: int,
        cols: int,
        device: torch.device,
        dtype: torch.dtype,
    ) -> torch.Tensor:
        """Shared all-ones matrix; callers must not write to it."""
        key = (int(rows), int(cols), dtype, str(torch.device(device)))
        ones = self._const_ones.get(key)
        if ones is None:
            ones = torch.ones(rows, cols, dtype=dtype, device=device)
            self._const_ones[key] = ones
        return ones
