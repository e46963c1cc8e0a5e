# sepgraph/parallel.py
"""
Explicit data-parallel primitives for the element-wise passes of the solver.

Work is cut into fixed contiguous chunks; chunk partials are always combined
in chunk order, so a reduction gives the same answer for any worker count.
"""
from __future__ import annotations
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import numpy as np

DEFAULT_CHUNK = 1 << 15


def _ranges(n, chunk):
    return [(lo, min(lo + chunk, n)) for lo in range(0, n, chunk)]


class ParallelReducer:
    """
    map_ranges / reduce over [0, n). workers <= 1 runs inline on the caller's
    thread; otherwise a ThreadPoolExecutor is created on __enter__ (or lazily)
    and shut down on __exit__ / close(). numpy releases the GIL inside the
    vectorized kernels, which is where the chunks spend their time.
    """

    def __init__(self, workers: Optional[int] = 1, chunk_size: int = DEFAULT_CHUNK):
        if workers is None or workers == 0:
            workers = os.cpu_count() or 1
        self.workers = max(1, int(workers))
        self.chunk_size = max(1, int(chunk_size))
        self._executor = None

    def __enter__(self):
        self._ensure_executor()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _ensure_executor(self):
        if self.workers > 1 and self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.workers)
        return self._executor

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def map_ranges(self, n: int, fn: Callable[[int, int], object]) -> list:
        chunks = _ranges(int(n), self.chunk_size)
        if len(chunks) <= 1 or self.workers == 1:
            return [fn(lo, hi) for lo, hi in chunks]
        ex = self._ensure_executor()
        futures = [ex.submit(fn, lo, hi) for lo, hi in chunks]
        # .result() re-raises worker exceptions on the caller's thread
        return [f.result() for f in futures]

    def reduce(self, n: int, fn: Callable[[int, int], float],
               combine: Callable[[float, float], float], initial: float):
        acc = initial
        for part in self.map_ranges(n, fn):
            acc = combine(acc, part)
        return acc

    def max_diff(self, v1, v2) -> float:
        """max_i |v1_i - v2_i|"""
        v1 = np.asarray(v1); v2 = np.asarray(v2)
        if v1.shape != v2.shape:
            raise ValueError(f"max_diff: shapes differ {v1.shape} vs {v2.shape}")
        return self.reduce(v1.size,
                           lambda lo, hi: float(np.max(np.abs(v1[lo:hi] - v2[lo:hi]))),
                           max, 0.0)

    def asum(self, v) -> float:
        """sum_i |v_i|"""
        v = np.asarray(v)
        return self.reduce(v.size, lambda lo, hi: float(np.sum(np.abs(v[lo:hi]))),
                           lambda s, t: s + t, 0.0)

    def nrm2(self, v) -> float:
        v = np.asarray(v)
        ss = self.reduce(v.size, lambda lo, hi: float(np.dot(v[lo:hi], v[lo:hi])),
                         lambda s, t: s + t, 0.0)
        return float(np.sqrt(ss))


_SEQUENTIAL = ParallelReducer(workers=1)


def max_diff(v1, v2) -> float:
    return _SEQUENTIAL.max_diff(v1, v2)


def asum(v) -> float:
    return _SEQUENTIAL.asum(v)
