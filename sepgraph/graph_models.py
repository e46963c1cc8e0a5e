# sepgraph/graph_models.py
"""
Common models written as graph-form problems

    minimize  sum_i f_i(y_i) + sum_j g_j(x_j)   s.t.  y = A x

Every solver takes A in any form as_operator accepts and forwards extra
keyword arguments (abs_tol, rel_tol, max_iter, rho, verbose, ...) to
GraphProblem. Each returns a Result in the precision of A.
"""
from __future__ import annotations

import numpy as np

from .admm_core import solve
from .errors import ConfigurationError
from .operators import as_operator
from .problem import GraphProblem, Result
from .prox_catalog import FunctionVector, Kernel


def _rhs(b, m, name="b", dtype=np.float64):
    b = np.asarray(b, dtype=dtype).ravel()
    if b.shape != (m,):
        raise ConfigurationError(f"{name} must have length {m}, got {b.shape[0]}")
    return b


def _labels(y, m, dtype=np.float64):
    y = _rhs(y, m, "y", dtype)
    if not np.all(np.isin(y, (-1.0, 1.0))):
        raise ConfigurationError("labels must be -1 or +1")
    return y


def _solve_graph_form(op, f, g, settings) -> Result:
    return solve(GraphProblem(op, f, g, **settings))


def solve_lasso(A, b, lambd, **settings) -> Result:
    """minimize 0.5||Ax - b||^2 + lambd ||x||_1"""
    op = as_operator(A)
    m, n = op.shape
    dt = op.dtype
    f = FunctionVector(m, h=Kernel.SQUARE, b=_rhs(b, m, dtype=dt), dtype=dt)
    g = FunctionVector(n, h=Kernel.ABS, c=lambd, dtype=dt)
    return _solve_graph_form(op, f, g, settings)


def solve_ridge(A, b, lambd, **settings) -> Result:
    """minimize 0.5||Ax - b||^2 + (lambd/2) ||x||^2"""
    op = as_operator(A)
    m, n = op.shape
    dt = op.dtype
    f = FunctionVector(m, h=Kernel.SQUARE, b=_rhs(b, m, dtype=dt), dtype=dt)
    g = FunctionVector(n, h=Kernel.SQUARE, c=lambd, dtype=dt)
    return _solve_graph_form(op, f, g, settings)


def solve_elastic_net(A, b, lambda1, lambda2, **settings) -> Result:
    """minimize 0.5||Ax - b||^2 + lambda1 ||x||_1 + (lambda2/2) ||x||^2"""
    op = as_operator(A)
    m, n = op.shape
    dt = op.dtype
    f = FunctionVector(m, h=Kernel.SQUARE, b=_rhs(b, m, dtype=dt), dtype=dt)
    # the quadratic rides on the e term of the abs kernel
    g = FunctionVector(n, h=Kernel.ABS, c=lambda1, e=lambda2, dtype=dt)
    return _solve_graph_form(op, f, g, settings)


def solve_nonneg_ls(A, b, **settings) -> Result:
    """minimize 0.5||Ax - b||^2  s.t.  x >= 0"""
    op = as_operator(A)
    m, n = op.shape
    dt = op.dtype
    f = FunctionVector(m, h=Kernel.SQUARE, b=_rhs(b, m, dtype=dt), dtype=dt)
    g = FunctionVector(n, h=Kernel.IND_GE0, dtype=dt)
    return _solve_graph_form(op, f, g, settings)


def solve_bounded_ls(A, b, lb, ub, **settings) -> Result:
    """minimize 0.5||Ax - b||^2  s.t.  lb <= x <= ub (scalars or length-n arrays)"""
    op = as_operator(A)
    m, n = op.shape
    dt = op.dtype
    f = FunctionVector(m, h=Kernel.SQUARE, b=_rhs(b, m, dtype=dt), dtype=dt)
    g = FunctionVector(n, h=Kernel.IND_BOX, lower=lb, upper=ub, dtype=dt)
    return _solve_graph_form(op, f, g, settings)


def solve_logistic(A, y, lambd, **settings) -> Result:
    """
    L1-regularized logistic regression, labels y in {-1, +1}:

        minimize sum_i log(1 + exp(-y_i a_i^T x)) + lambd ||x||_1
    """
    op = as_operator(A)
    m, n = op.shape
    dt = op.dtype
    y = _labels(y, m, dt)
    # rows scaled by -y turn the loss into the bare logistic kernel
    op = op.scaled(-y, np.ones(n, dtype=dt))
    f = FunctionVector(m, h=Kernel.LOGISTIC, dtype=dt)
    g = FunctionVector(n, h=Kernel.ABS, c=lambd, dtype=dt)
    return _solve_graph_form(op, f, g, settings)


def solve_huber(A, b, delta=1.0, lambd=0.0, **settings) -> Result:
    """
    minimize sum_i huber_delta(a_i^T x - b_i) + lambd ||x||_1, where
    huber_delta(r) = r^2/2 for |r| <= delta and delta|r| - delta^2/2 beyond.
    """
    if delta <= 0:
        raise ConfigurationError(f"delta must be positive, got {delta}")
    op = as_operator(A)
    m, n = op.shape
    dt = op.dtype
    b = _rhs(b, m, dtype=dt)
    # the kernel's kink sits at 1: delta^2 * huber((r - b) / delta)
    f = FunctionVector(m, h=Kernel.HUBER, a=1.0 / delta, b=b / delta, c=delta * delta, dtype=dt)
    if lambd > 0:
        g = FunctionVector(n, h=Kernel.ABS, c=lambd, dtype=dt)
    else:
        g = FunctionVector(n, h=Kernel.ZERO, dtype=dt)
    return _solve_graph_form(op, f, g, settings)


def solve_svm(A, y, lambd, **settings) -> Result:
    """
    L2-regularized hinge-loss SVM, labels y in {-1, +1}:

        minimize sum_i max(0, 1 - y_i a_i^T x) + (lambd/2) ||x||^2
    """
    op = as_operator(A)
    m, n = op.shape
    dt = op.dtype
    y = _labels(y, m, dt)
    op = op.scaled(y, np.ones(n, dtype=dt))
    # max(0, 1 - t) = max_neg0(t - 1)
    f = FunctionVector(m, h=Kernel.MAX_NEG0, b=1.0, dtype=dt)
    g = FunctionVector(n, h=Kernel.SQUARE, c=lambd, dtype=dt)
    return _solve_graph_form(op, f, g, settings)
