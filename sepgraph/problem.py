# sepgraph/problem.py
from __future__ import annotations
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional

import numpy as np

from .errors import ConfigurationError
from .operators import as_operator
from .parallel import DEFAULT_CHUNK
from .prox_catalog import FunctionVector, make_function_vector


class Status(IntEnum):
    CONVERGED = 0
    MAX_ITERS = 1
    NUMERICAL_FAILURE = 2


DEFAULT_SETTINGS: Dict[str, Any] = {
    "rho": 1.0,
    "abs_tol": 1e-4,
    "rel_tol": 1e-3,
    "max_iter": 2500,
    "alpha": 1.7,
    "adaptive_rho": True,
    "gap_stop": False,
    "equilibrate": True,
    "equil_iter": 10,
    "projector": "auto",
    "rho_drift": 10.0,
    "workers": 1,
    "chunk_size": DEFAULT_CHUNK,
    "verbose": 0,
    "print_every": 25,
}


def _check_settings(s):
    if not (s["rho"] > 0 and np.isfinite(s["rho"])):
        raise ConfigurationError(f"rho must be positive and finite, got {s['rho']}")
    if s["abs_tol"] < 0 or s["rel_tol"] < 0:
        raise ConfigurationError("tolerances must be non-negative")
    if int(s["max_iter"]) < 0:
        raise ConfigurationError(f"max_iter must be >= 0, got {s['max_iter']}")
    if not (0.0 < s["alpha"] < 2.0):
        raise ConfigurationError(f"alpha must lie in (0, 2), got {s['alpha']}")
    if s["rho_drift"] <= 1.0:
        raise ConfigurationError(f"rho_drift must be > 1, got {s['rho_drift']}")
    if int(s["chunk_size"]) < 1:
        raise ConfigurationError(f"chunk_size must be >= 1, got {s['chunk_size']}")


@dataclass(frozen=True)
class Result:
    """
    Outcome of one solve, in the caller's (unequilibrated) scaling.

    Args:
        x: Primal solution (length n).
        y: A x as seen by f (length m).
        lam: Dual variable for f (length m).
        mu: Dual variable for g (length n).
        objective: f(y) + g(x).
        iterations: ADMM iterations run by this call.
        status: Terminal Status.
        primal_residual, dual_residual, gap: Final convergence measures.
        rho: Penalty at exit (carried into a warm start).
        solve_time: Wall time of the call in seconds.
        factor_time: Time spent building the factors used.
    """
    x: np.ndarray
    y: np.ndarray
    lam: np.ndarray
    mu: np.ndarray
    objective: float
    iterations: int
    status: Status
    primal_residual: float
    dual_residual: float
    gap: float
    rho: float
    solve_time: float = 0.0
    factor_time: float = 0.0

    @property
    def converged(self) -> bool:
        return self.status == Status.CONVERGED


class SolveState:
    """
    ADMM iterates in the equilibrated space. Mutated in place by every solve
    and carried into the next one when warm_start=True.
    """

    def __init__(self, m, n, dtype, rho=1.0):
        self.m, self.n = int(m), int(n)
        self.dtype = np.dtype(dtype)
        self.reset(rho)

    def reset(self, rho=1.0):
        m, n, dt = self.m, self.n, self.dtype
        self.x = np.zeros(n, dtype=dt); self.y = np.zeros(m, dtype=dt)
        self.x12 = np.zeros(n, dtype=dt); self.y12 = np.zeros(m, dtype=dt)
        self.xt = np.zeros(n, dtype=dt); self.yt = np.zeros(m, dtype=dt)
        self.lam = np.zeros(m, dtype=dt); self.mu = np.zeros(n, dtype=dt)
        self.rho = float(rho)
        self.last_status: Optional[Status] = None
        self.last_residuals = (np.inf, np.inf, np.inf)
        self.f_snapshot = None
        self.g_snapshot = None
        self.scaling_key = None
        self.settings_snapshot = None

    @property
    def is_fresh(self) -> bool:
        return self.last_status is None


class GraphProblem:
    """
    minimize  f(y) + g(x)   subject to  y = A x

    A is any operator as_operator accepts; f has one term per row and g one
    per column (see prox_catalog). x / y are caller-owned output buffers and
    are only written once a solve has finished.
    """

    def __init__(self, A, f=None, g=None, x=None, y=None, **settings):
        self.operator = as_operator(A)
        m, n = self.operator.shape
        self.dtype = self.operator.dtype
        unknown = set(settings) - set(DEFAULT_SETTINGS)
        if unknown:
            raise ConfigurationError(f"unknown settings: {sorted(unknown)}")
        self.settings = dict(DEFAULT_SETTINGS)
        self.settings.update(settings)
        _check_settings(self.settings)

        self.f: Optional[FunctionVector] = None
        self.g: Optional[FunctionVector] = None
        if f is not None or g is not None:
            self.configure(f, g)

        self.x = self._buffer(x, n, "x")
        self.y = self._buffer(y, m, "y")
        self.state = SolveState(m, n, self.dtype, rho=self.settings["rho"])
        self._init_x = None
        self._init_lambda = None

    @property
    def shape(self):
        return self.operator.shape

    def _buffer(self, buf, size, name):
        if buf is None:
            return np.zeros(size, dtype=self.dtype)
        if not isinstance(buf, np.ndarray) or buf.shape != (size,):
            raise ConfigurationError(f"{name} buffer must be an ndarray of shape ({size},)")
        if not buf.flags.writeable:
            raise ConfigurationError(f"{name} buffer is read-only")
        return buf

    def configure(self, f, g):
        """Attach (or replace) the f and g term lists."""
        m, n = self.operator.shape
        if f is None or g is None:
            raise ConfigurationError("both f and g must be given")
        self.f = make_function_vector(f, m, dtype=self.dtype, what="f")
        self.g = make_function_vector(g, n, dtype=self.dtype, what="g")
        return self

    def update(self, **settings):
        unknown = set(settings) - set(DEFAULT_SETTINGS)
        if unknown:
            raise ConfigurationError(f"unknown settings: {sorted(unknown)}")
        new = dict(self.settings)
        new.update(settings)
        _check_settings(new)
        self.settings = new
        return self

    def initialize(self, x0=None, lambda0=None):
        """Seed the next solve with a primal guess and/or a dual guess for f."""
        m, n = self.operator.shape
        if x0 is not None:
            x0 = np.asarray(x0, dtype=self.dtype)
            if x0.shape != (n,):
                raise ConfigurationError(f"x0 must have shape ({n},), got {x0.shape}")
            self._init_x = x0.copy()
        if lambda0 is not None:
            lambda0 = np.asarray(lambda0, dtype=self.dtype)
            if lambda0.shape != (m,):
                raise ConfigurationError(f"lambda0 must have shape ({m},), got {lambda0.shape}")
            self._init_lambda = lambda0.copy()
        return self

    def pop_initial_guess(self):
        out = (self._init_x, self._init_lambda)
        self._init_x = self._init_lambda = None
        return out

    def validate(self):
        if self.f is None or self.g is None:
            raise ConfigurationError("problem has no f/g; call configure(f, g) first")
        m, n = self.operator.shape
        if len(self.f) != m or len(self.g) != n:
            raise ConfigurationError(
                f"f has {len(self.f)} terms and g has {len(self.g)} for a {m}x{n} operator")
        self.f.validate("f")
        self.g.validate("g")
        _check_settings(self.settings)

    def solve(self, factors=None, *, warm_start=False) -> Result:
        from .admm_core import solve
        return solve(self, factors, warm_start=warm_start)

    def __repr__(self):
        m, n = self.operator.shape
        return f"GraphProblem(m={m}, n={n}, f={self.f!r}, g={self.g!r})"
