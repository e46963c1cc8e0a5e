# sepgraph/equilibration.py
"""Row/column equilibration of the graph operator."""
from __future__ import annotations
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .operators import LinearOperator


@dataclass(frozen=True)
class EquilibrationReport:
    """
    Scaling applied to A: A_s = diag(d) A diag(e).

    Args:
        d: Row scale factors (length m).
        e: Column scale factors (length n).
        norm: Estimated 2-norm of diag(d0) A diag(e0) before the final
            normalization (1.0 when nothing was scaled).
        iterations: Sinkhorn-Knopp passes performed.
    """
    d: np.ndarray
    e: np.ndarray
    norm: float
    iterations: int


def identity_scaling(op: LinearOperator) -> Tuple[LinearOperator, EquilibrationReport]:
    m, n = op.shape
    return op, EquilibrationReport(d=np.ones(m, dtype=op.dtype), e=np.ones(n, dtype=op.dtype),
                                   norm=1.0, iterations=0)


def estimate_norm(op: LinearOperator, max_iter: int = 50, tol: float = 1e-3) -> float:
    """
    ||A||_2 by power iteration on A^T A from a fixed start vector, so repeated
    calls on the same operator return the same value.
    """
    m, n = op.shape
    if m == 0 or n == 0:
        return 0.0
    x = np.full(n, 1.0 / np.sqrt(n), dtype=op.dtype)
    sigma = 0.0
    for _ in range(max_iter):
        y = op.multiply_transpose(op.multiply(x))
        nrm = float(np.linalg.norm(y))
        if nrm == 0.0:
            return 0.0
        sigma_new = np.sqrt(nrm)
        x = (y / nrm).astype(op.dtype, copy=False)
        if abs(sigma_new - sigma) <= tol * sigma_new:
            sigma = sigma_new
            break
        sigma = sigma_new
    return float(sigma)


def sinkhorn_knopp(op: LinearOperator, max_iter: int = 10) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Alternating normalization of the element-wise squared operator B = A.^2.
    Returns (d, e) such that diag(d) A diag(e) has roughly balanced row and
    column 2-norms. Empty rows/columns keep a scale of 1.
    """
    m, n = op.shape
    B = op.squared()
    dB = np.ones(m, dtype=op.dtype)
    eB = np.ones(n, dtype=op.dtype)
    it = 0
    for it in range(1, max_iter + 1):
        col = B.multiply_transpose(dB)
        eB = np.where(col > 0, 1.0 / np.where(col > 0, col, 1.0), 1.0).astype(op.dtype)
        row = B.multiply(eB)
        dB = np.where(row > 0, 1.0 / np.where(row > 0, row, 1.0), 1.0).astype(op.dtype)
    return np.sqrt(dB), np.sqrt(eB), it


def equilibrate(op: LinearOperator, max_iter: int = 10) -> Tuple[LinearOperator, EquilibrationReport]:
    """
    Sinkhorn-Knopp equilibration, a balancing of d against e, then
    normalization to ||D A E||_2 ~ 1.

    Args:
        op: Operator to scale; never modified.
        max_iter: Sinkhorn-Knopp passes.

    Returns:
        (scaled operator, report). Deterministic for a given op and max_iter.
    """
    m, n = op.shape
    if m == 0 or n == 0 or op.nnz() == 0:
        return identity_scaling(op)

    d, e, it = sinkhorn_knopp(op, max_iter=max_iter)
    # D A E is unchanged by (d / s, e * s); pick s so the RMS of d and e match
    nrm_d, nrm_e = float(np.linalg.norm(d)), float(np.linalg.norm(e))
    if nrm_d > 0.0 and nrm_e > 0.0:
        s = np.sqrt(nrm_d * np.sqrt(n) / (nrm_e * np.sqrt(m)))
        d = (d / s).astype(op.dtype)
        e = (e * s).astype(op.dtype)
    scaled = op.scaled(d, e)
    norm = estimate_norm(scaled)
    if norm > 0.0 and np.isfinite(norm):
        s = np.sqrt(norm)
        d = (d / s).astype(op.dtype)
        e = (e / s).astype(op.dtype)
        scaled = op.scaled(d, e)
    else:
        norm = 1.0
    return scaled, EquilibrationReport(d=d, e=e, norm=float(norm), iterations=it)


def unscale_primal(report: EquilibrationReport, x_s, y_s):
    """x = E x_s, y = D^{-1} y_s"""
    return report.e * x_s, y_s / report.d


def unscale_dual(report: EquilibrationReport, lam_s, mu_s):
    """lambda = D lambda_s, mu = E^{-1} mu_s"""
    return report.d * lam_s, mu_s / report.e
