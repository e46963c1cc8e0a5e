# sepgraph/factors.py
"""
Factorization cache: the equilibrated operator, its scale vectors and the
projector built on top of it. Allocated once per operator and reused across
solves (e.g. every lambda of a regularization path), then released.
"""
from __future__ import annotations
import math
import time

from .equilibration import equilibrate as _equilibrate, identity_scaling
from .errors import ConfigurationError
from .linear_solvers import choose_projector
from .operators import LinearOperator, as_operator


class FactorizationHandle:
    """
    Explicit allocate/release lifecycle; also a context manager so the
    factors are dropped on every exit path:

        with FactorizationHandle().allocate(A) as fac:
            solve(problem, fac)
    """

    def __init__(self):
        self._allocated = False
        self.source = None
        self.operator = None
        self.report = None
        self.projector = None
        self.rho_factored = None
        self.rho_drift = 10.0
        self.refresh_count = 0
        self.factor_time = 0.0
        self.scaling_key = None

    def allocate(self, operator, *, equilibrate: bool = True, equil_iter: int = 10,
                 projector: str = "auto", rho: float = 1.0, rho_drift: float = 10.0):
        if self._allocated:
            self.release()
        if rho <= 0 or not math.isfinite(rho):
            raise ConfigurationError(f"rho must be positive and finite, got {rho}")
        if rho_drift <= 1.0:
            raise ConfigurationError(f"rho_drift must be > 1, got {rho_drift}")
        op = as_operator(operator)
        t0 = time.perf_counter()
        if equilibrate:
            scaled, report = _equilibrate(op, max_iter=equil_iter)
        else:
            scaled, report = identity_scaling(op)
        self.projector = choose_projector(scaled, projector)
        self.factor_time = time.perf_counter() - t0

        self.source = op
        self.operator = scaled
        self.report = report
        self.rho_factored = float(rho)
        self.rho_drift = float(rho_drift)
        self.refresh_count = 0
        # equilibration is deterministic, so iterates kept in the scaled space
        # stay valid for any handle built from the same operator and settings
        self.scaling_key = (id(op), op.shape, bool(equilibrate), int(equil_iter))
        self._allocated = True
        return self

    @property
    def is_allocated(self) -> bool:
        return self._allocated

    @property
    def shape(self):
        return self.operator.shape if self._allocated else None

    def rho_bucket(self, rho) -> int:
        return int(math.floor(math.log(rho) / math.log(self.rho_drift)))

    @property
    def key(self):
        if not self._allocated:
            return None
        return (id(self.source), self.source.shape, self.rho_bucket(self.rho_factored))

    def check(self, operator: LinearOperator):
        if not self._allocated:
            raise ConfigurationError("factors used before allocate() or after release()")
        if tuple(operator.shape) != tuple(self.source.shape):
            raise ConfigurationError(
                f"factors were built for a {self.source.shape} operator, "
                f"problem has {operator.shape}")

    def needs_refresh(self, rho) -> bool:
        return abs(math.log(rho / self.rho_factored)) > math.log(self.rho_drift)

    def refresh(self, rho) -> bool:
        """Re-key to the new rho bucket; refactors only if the projector depends on rho."""
        rebuilt = self.projector.refresh(rho)
        self.rho_factored = float(rho)
        self.refresh_count += 1
        return rebuilt

    def project(self, c, d):
        if not self._allocated:
            raise ConfigurationError("factors used after release()")
        return self.projector.project(c, d)

    def release(self):
        if self.projector is not None:
            self.projector.release()
        self.projector = None
        self.operator = None
        self.source = None
        self.report = None
        self.scaling_key = None
        self._allocated = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()

    def __repr__(self):
        if not self._allocated:
            return "FactorizationHandle(released)"
        return (f"FactorizationHandle(shape={self.shape}, projector={self.projector.name}, "
                f"rho_factored={self.rho_factored:.3g}, refreshes={self.refresh_count})")


def allocate_factors(target, **kwargs) -> FactorizationHandle:
    """
    AllocateFactors. `target` is a GraphProblem (its settings supply the
    defaults) or anything as_operator accepts.
    """
    if hasattr(target, "operator") and hasattr(target, "settings"):
        s = target.settings
        opts = dict(equilibrate=s["equilibrate"], equil_iter=s["equil_iter"],
                    projector=s["projector"], rho=s["rho"], rho_drift=s["rho_drift"])
        opts.update(kwargs)
        return FactorizationHandle().allocate(target.operator, **opts)
    return FactorizationHandle().allocate(target, **kwargs)


def release_factors(handle: FactorizationHandle) -> None:
    """ReleaseFactors; safe to call twice."""
    handle.release()
