# sepgraph/linear_solvers.py
"""
Projection onto the graph {(x, y) : y = A x}:

    argmin ||x - c||^2 + ||y - d||^2   s.t.  y = A x

Tall operators (m >= n) solve (I + A^T A) x = c + A^T d; wide ones use
x = c + A^T (I + A A^T)^{-1} (d - A c). Either way y = A x.
"""
from __future__ import annotations
import numpy as np
import scipy.linalg as la
import scipy.sparse.linalg as spla

from .errors import ConfigurationError, NumericalFailure
from .operators import DenseOperator, LinearOperator, SparseOperator

try:
    from sksparse.cholmod import cholesky as cholmod_cholesky
    from sksparse.cholmod import CholmodError
except ImportError:
    cholmod_cholesky = None
    CholmodError = None


def have_cholmod() -> bool:
    return cholmod_cholesky is not None


class GraphProjector:
    """Base projector; subclasses supply _factor() and _solve(rhs)."""
    name = "base"
    # the graph projection has no rho in it; subclasses that factor a
    # rho-shifted system set this and rebuild in refresh()
    depends_on_rho = False

    def __init__(self, op: LinearOperator):
        self.op = op
        m, n = op.shape
        self.m, self.n = m, n
        self.side = "normal" if m >= n else "outer"
        self._factor()

    def _factor(self):
        raise NotImplementedError

    def _solve(self, rhs):
        raise NotImplementedError

    def project(self, c, d):
        op = self.op
        if self.side == "normal":
            x = self._solve(c + op.multiply_transpose(d))
        else:
            x = c + op.multiply_transpose(self._solve(d - op.multiply(c)))
        x = np.asarray(x, dtype=op.dtype)
        return x, op.multiply(x)

    def refresh(self, rho) -> bool:
        """Rebuild for a new rho when the factored system depends on it."""
        if self.depends_on_rho:
            self._factor()
            return True
        return False

    def release(self):
        pass


class DenseCholeskyProjector(GraphProjector):
    name = "dense"

    def _factor(self):
        A = self.op
        if not isinstance(A, DenseOperator):
            A = DenseOperator(A.to_scipy().toarray(), order="row")
        K = A.gram(self.side)
        try:
            self._cho = la.cho_factor(K, lower=True, check_finite=False)
        except la.LinAlgError as exc:
            raise NumericalFailure(f"Cholesky of I + A^T A failed: {exc}") from exc

    def _solve(self, rhs):
        return la.cho_solve(self._cho, rhs, check_finite=False)

    def release(self):
        self._cho = None


class SparseDirectProjector(GraphProjector):
    """
    Sparse Cholesky via CHOLMOD when scikit-sparse is installed, otherwise
    SuperLU/UMFPACK through scipy.sparse.linalg.factorized.
    """
    name = "direct"

    def __init__(self, op, use_cholmod=None,
                 cholmod_mode="supernodal", ordering_method="best"):
        if use_cholmod is None:
            use_cholmod = have_cholmod()
        if use_cholmod and not have_cholmod():
            raise ConfigurationError("CHOLMOD unavailable (install scikit-sparse).")
        self.use_cholmod = use_cholmod
        self.cholmod_mode = cholmod_mode
        self.ordering_method = ordering_method
        super().__init__(op)

    def _factor(self):
        A = self.op.to_scipy()
        op = self.op if isinstance(self.op, SparseOperator) else SparseOperator(A)
        K = op.gram(self.side)
        if self.use_cholmod:
            self.name = "cholmod"
            try:
                self._fact = cholmod_cholesky(K.astype(np.float64),
                                              mode=self.cholmod_mode,
                                              ordering_method=self.ordering_method)
            except CholmodError as exc:
                raise NumericalFailure(f"CHOLMOD factorization failed: {exc}") from exc
        else:
            try:
                self._fact = spla.factorized(K.tocsc())
            except RuntimeError as exc:
                raise NumericalFailure(f"sparse factorization failed: {exc}") from exc

    def _solve(self, rhs):
        return self._fact(np.asarray(rhs, dtype=np.float64 if self.use_cholmod else self.op.dtype))

    def release(self):
        self._fact = None


class CGProjector(GraphProjector):
    """
    Indirect projector: Jacobi-preconditioned conjugate gradient on the same
    system, warm-started from the previous projection.
    """
    name = "cg"

    def __init__(self, op, rtol=1e-10, max_iter=None):
        self.rtol = float(rtol)
        self.max_iter = max_iter
        self._x0 = None
        self.cg_iters = 0
        super().__init__(op)

    def _factor(self):
        op = self.op
        k = self.n if self.side == "normal" else self.m
        dtype = op.dtype
        sq = op.squared()
        if self.side == "normal":
            diag = 1.0 + sq.multiply_transpose(np.ones(self.m, dtype=dtype))
            mv = lambda v: v + op.multiply_transpose(op.multiply(v))
        else:
            diag = 1.0 + sq.multiply(np.ones(self.n, dtype=dtype))
            mv = lambda v: v + op.multiply(op.multiply_transpose(v))
        self._K = spla.LinearOperator((k, k), matvec=mv, dtype=dtype)
        inv_diag = (1.0 / diag).astype(dtype)
        self._M = spla.LinearOperator((k, k), matvec=lambda v: inv_diag * v, dtype=dtype)
        self._x0 = None

    def _count(self, _xk):
        self.cg_iters += 1

    def _solve(self, rhs):
        x, info = spla.cg(self._K, rhs, x0=self._x0, rtol=self.rtol, atol=0.0,
                          maxiter=self.max_iter, M=self._M, callback=self._count)
        if info < 0 or not np.all(np.isfinite(x)):
            raise NumericalFailure(f"CG breakdown (info={info})")
        self._x0 = x
        return x

    def release(self):
        self._K = self._M = self._x0 = None


class EmptyProjector(GraphProjector):
    """m == 0 or n == 0: the graph is {(c, 0)} or {(0, A 0)}, nothing to factor."""
    name = "empty"

    def _factor(self):
        pass

    def _solve(self, rhs):
        return np.zeros_like(rhs)


def choose_projector(op: LinearOperator, mode: str = "auto") -> GraphProjector:
    m, n = op.shape
    if m == 0 or n == 0:
        return EmptyProjector(op)
    # ---- explicit modes first ----
    if mode == "dense":
        return DenseCholeskyProjector(op)
    if mode == "direct":
        return SparseDirectProjector(op, use_cholmod=False)
    if mode == "cholmod":
        return SparseDirectProjector(op, use_cholmod=True)
    if mode == "cg":
        return CGProjector(op)
    if mode != "auto":
        raise ConfigurationError(
            f"unknown projector {mode!r}; expected auto, dense, direct, cholmod or cg")

    # ---- auto policy ----
    if isinstance(op, DenseOperator):
        return DenseCholeskyProjector(op)
    if min(m, n) <= 2000 and op.nnz() >= 0.25 * m * n:
        # nearly dense: the dense Cholesky of the small side is cheaper
        return DenseCholeskyProjector(op)
    return SparseDirectProjector(op)
