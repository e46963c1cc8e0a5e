# sepgraph/path.py
"""
Regularization paths: one factorization for the whole sweep, each solve warm
started from the previous one, early stop once the solution stops moving.
"""
from __future__ import annotations
from dataclasses import dataclass, field
import time
from typing import List

import numpy as np
import pandas as pd

from .admm_core import solve
from .errors import ConfigurationError
from .factors import allocate_factors
from .operators import as_operator
from .parallel import ParallelReducer
from .problem import GraphProblem, Result
from .prox_catalog import FunctionVector, Kernel


@dataclass
class PathResult:
    """Per-weight solves of a path, in sweep order."""
    weights: List[float] = field(default_factory=list)
    results: List[Result] = field(default_factory=list)
    stopped_early: bool = False
    total_time: float = 0.0
    factor_time: float = 0.0

    def __len__(self):
        return len(self.results)

    @property
    def coefs(self) -> np.ndarray:
        """(n_solved, n) array of solutions."""
        if not self.results:
            return np.zeros((0, 0))
        return np.vstack([r.x for r in self.results])

    def nnz(self, threshold=0.0) -> np.ndarray:
        return np.array([int(np.sum(np.abs(r.x) > threshold)) for r in self.results])

    def to_frame(self, threshold=0.0) -> pd.DataFrame:
        rows = []
        for w, r in zip(self.weights, self.results):
            rows.append({
                "lambda": w,
                "status": r.status.name,
                "iterations": r.iterations,
                "objective": r.objective,
                "nnz": int(np.sum(np.abs(r.x) > threshold)),
                "primal_residual": r.primal_residual,
                "dual_residual": r.dual_residual,
                "rho": r.rho,
                "solve_time": r.solve_time,
            })
        return pd.DataFrame(rows)


def regularization_path(problem: GraphProblem, weights, *, factors=None, tol=1e-3,
                        workers=None) -> PathResult:
    """
    Solve `problem` once per weight, setting every g weight (g.c) before each
    solve. Stops when max|x - x_last| < tol * sum|x|.

    factors: reuse an existing handle; otherwise one is allocated for the sweep
        and released before returning.
    """
    weights = [float(w) for w in np.atleast_1d(np.asarray(weights, dtype=np.float64))]
    if any(w < 0 or not np.isfinite(w) for w in weights):
        raise ConfigurationError("path weights must be finite and >= 0")
    if problem.g is None or problem.f is None:
        raise ConfigurationError("problem has no f/g; call configure(f, g) first")
    verbose = int(problem.settings["verbose"])
    out = PathResult()
    own = factors is None
    if own:
        factors = allocate_factors(problem)
    out.factor_time = factors.factor_time
    workers = problem.settings["workers"] if workers is None else workers

    t0 = time.perf_counter()
    x_last = None
    try:
        with ParallelReducer(workers=workers, chunk_size=problem.settings["chunk_size"]) as red:
            for w in weights:
                problem.g.c[:] = w
                if verbose:
                    print(f"lambda = {w:e}")
                res = solve(problem, factors, warm_start=True)
                out.weights.append(w)
                out.results.append(res)
                if x_last is not None and red.max_diff(res.x, x_last) < tol * red.asum(res.x):
                    out.stopped_early = True
                    break
                x_last = res.x
    finally:
        if own:
            factors.release()
    out.total_time = time.perf_counter() - t0
    return out


def lambda_grid(lambda_max, n_lambda=100, lambda_min_ratio=1e-2) -> np.ndarray:
    """Geometric grid from lambda_max down to lambda_min_ratio * lambda_max."""
    if n_lambda < 1:
        raise ConfigurationError(f"n_lambda must be >= 1, got {n_lambda}")
    if not (0 < lambda_min_ratio <= 1):
        raise ConfigurationError(f"lambda_min_ratio must lie in (0, 1], got {lambda_min_ratio}")
    if lambda_max <= 0:
        return np.zeros(1)
    if n_lambda == 1:
        return np.array([float(lambda_max)])
    return np.geomspace(lambda_max, lambda_min_ratio * lambda_max, n_lambda)


def lasso_path(A, b, n_lambda=100, lambda_min_ratio=1e-2, *, tol=1e-3, factors=None,
               **settings) -> PathResult:
    """
    Lasso over a decreasing lambda grid:

        minimize (1/2) ||Ax - b||^2 + lambda ||x||_1

    starting at lambda_max = ||A^T b||_inf, where the solution is all zero.
    """
    op = as_operator(A)
    m, n = op.shape
    b = np.asarray(b, dtype=op.dtype).ravel()
    if b.shape != (m,):
        raise ConfigurationError(f"b must have length {m}, got {b.shape[0]}")
    lambda_max = float(np.max(np.abs(op.multiply_transpose(b)))) if n else 0.0
    lambdas = lambda_grid(lambda_max, n_lambda, lambda_min_ratio)

    f = FunctionVector(m, h=Kernel.SQUARE, b=b, dtype=op.dtype)
    g = FunctionVector(n, h=Kernel.ABS, c=lambdas[0], dtype=op.dtype)
    problem = GraphProblem(op, f, g, **settings)
    return regularization_path(problem, lambdas, factors=factors, tol=tol)
