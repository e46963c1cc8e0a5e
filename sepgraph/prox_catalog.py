# sepgraph/prox_catalog.py
"""
Separable proximal kernels for graph-form problems.

Every term has the form

    c * h(a*z - b) + d*z + (e/2)*z^2

with h taken from the closed catalogue in `Kernel`. The prox of a term is

    argmin_z  c*h(a*z - b) + d*z + (e/2)*z^2 + (rho/2)*(z - v)^2

and is reduced to the prox of the bare kernel h by the affine change of
variables in `FunctionVector.prox`.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import IntEnum

import numpy as np
from scipy.special import expit, lambertw

from .errors import ConfigurationError


class Kernel(IntEnum):
    ABS = 0          # h(z) = |z|
    EXP = 1          # h(z) = e^z
    HUBER = 2        # h(z) = huber(z)
    IDENTITY = 3     # h(z) = z
    IND_BOX01 = 4    # h(z) = I(0 <= z <= 1)
    IND_EQ0 = 5      # h(z) = I(z = 0)
    IND_GE0 = 6      # h(z) = I(z >= 0)
    IND_LE0 = 7      # h(z) = I(z <= 0)
    LOGISTIC = 8     # h(z) = log(1 + e^z)
    MAX_NEG0 = 9     # h(z) = max(0, -z)
    MAX_POS0 = 10    # h(z) = max(0, z)
    NEG_ENTR = 11    # h(z) = z log(z)
    NEG_LOG = 12     # h(z) = -log(z)
    RECIPR = 13      # h(z) = 1/z
    SQUARE = 14      # h(z) = (1/2) z^2
    ZERO = 15        # h(z) = 0
    IND_BOX = 16     # h(z) = I(lower <= z <= upper)


KERNEL_NAMES = {
    "abs": Kernel.ABS,
    "exp": Kernel.EXP,
    "huber": Kernel.HUBER,
    "identity": Kernel.IDENTITY,
    "ind_box01": Kernel.IND_BOX01,
    "ind_eq0": Kernel.IND_EQ0,
    "ind_ge0": Kernel.IND_GE0, "is_pos": Kernel.IND_GE0,
    "ind_le0": Kernel.IND_LE0,
    "logistic": Kernel.LOGISTIC,
    "max_neg0": Kernel.MAX_NEG0,
    "max_pos0": Kernel.MAX_POS0,
    "neg_entr": Kernel.NEG_ENTR,
    "neg_log": Kernel.NEG_LOG,
    "recipr": Kernel.RECIPR,
    "square": Kernel.SQUARE,
    "zero": Kernel.ZERO,
    "ind_box": Kernel.IND_BOX, "is_bound": Kernel.IND_BOX,
}

_KERNEL_VALUES = np.array(sorted(int(k) for k in Kernel))


def as_kernel(h) -> Kernel:
    if isinstance(h, Kernel):
        return h
    if isinstance(h, str):
        try:
            return KERNEL_NAMES[h.lower()]
        except KeyError:
            raise ConfigurationError(f"unknown kernel {h!r}") from None
    try:
        return Kernel(int(h))
    except (TypeError, ValueError):
        raise ConfigurationError(f"unknown kernel {h!r}") from None


# --- lambert W of exp(x), stable for large x ---
def _lambertw_exp(x):
    x = np.asarray(x, dtype=np.float64)
    w = np.empty_like(x)
    small = x < 100.0
    if small.any():
        w[small] = lambertw(np.exp(x[small])).real
    big = ~small
    if big.any():
        xb = x[big]
        wb = xb - np.log(xb)
        # Newton on w + log(w) = x; the start is already within 1e-2 for x >= 100
        for _ in range(6):
            wb = wb - (wb + np.log(wb) - xb) * wb / (wb + 1.0)
        w[big] = wb
    return w


# --- bare kernel proxes: argmin_z h(z) + (rho/2)(z - v)^2, vectorized ---
def prox_abs(v, rho, **_):
    """soft-threshold at 1/rho"""
    t = 1.0 / rho
    return np.maximum(v - t, 0.0) + np.minimum(v + t, 0.0)


def prox_exp(v, rho, **_):
    return (v - _lambertw_exp(v - np.log(rho))).astype(v.dtype, copy=False)


def prox_huber(v, rho, **_):
    quad = np.abs(v) < 1.0 + 1.0 / rho
    return np.where(quad, v * rho / (1.0 + rho), v - np.sign(v) / rho)


def prox_identity(v, rho, **_):
    return v - 1.0 / rho


def prox_ind_box01(v, rho, **_):
    return np.clip(v, 0.0, 1.0)


def prox_ind_eq0(v, rho, **_):
    return np.zeros_like(v)


def prox_ind_ge0(v, rho, **_):
    return np.maximum(v, 0.0)


def prox_ind_le0(v, rho, **_):
    return np.minimum(v, 0.0)


def prox_logistic(v, rho, *, max_iter=50, tol=1e-12, **_):
    """
    Root of expit(z) + rho*(z - v) = 0. The root lies in [v - 1/rho, v];
    Newton steps that leave the bracket fall back to bisection.
    """
    v64 = np.asarray(v, dtype=np.float64)
    r = np.broadcast_to(np.asarray(rho, dtype=np.float64), v64.shape)
    lo = v64 - 1.0 / r
    hi = v64.copy()
    z = v64 - 0.5 / r
    for _ in range(max_iter):
        s = expit(z)
        F = s + r * (z - v64)
        lo = np.where(F < 0.0, z, lo)
        hi = np.where(F > 0.0, z, hi)
        z_new = z - F / (s * (1.0 - s) + r)
        outside = (z_new <= lo) | (z_new >= hi)
        z_new = np.where(outside, 0.5 * (lo + hi), z_new)
        step = np.max(np.abs(z_new - z)) if z.size else 0.0
        z = z_new
        if step <= tol * (1.0 + np.max(np.abs(z))):
            break
    return z.astype(v.dtype, copy=False)


def prox_max_neg0(v, rho, **_):
    t = 1.0 / rho
    return np.where(v <= -t, v + t, np.where(v >= 0.0, v, 0.0))


def prox_max_pos0(v, rho, **_):
    t = 1.0 / rho
    return np.where(v >= t, v - t, np.where(v <= 0.0, v, 0.0))


def prox_neg_entr(v, rho, **_):
    # log z + 1 + rho (z - v) = 0  ->  z = W(rho e^{rho v - 1}) / rho
    return (_lambertw_exp(rho * v - 1.0 + np.log(rho)) / rho).astype(v.dtype, copy=False)


def prox_neg_log(v, rho, **_):
    return 0.5 * (v + np.sqrt(v * v + 4.0 / rho))


def prox_recipr(v, rho, *, max_iter=60, tol=1e-12, **_):
    """
    Positive root of z^3 - v z^2 - 1/rho = 0. The cubic is convex and increasing
    above max(v, 0), so Newton from z0 = max(v, 0) + rho^(-1/3) decreases
    monotonically onto the root.
    """
    v64 = np.asarray(v, dtype=np.float64)
    r = np.broadcast_to(np.asarray(rho, dtype=np.float64), v64.shape)
    z = np.maximum(v64, 0.0) + np.cbrt(1.0 / r)
    for _ in range(max_iter):
        p = z * z * (z - v64) - 1.0 / r
        dp = z * (3.0 * z - 2.0 * v64)
        z_new = z - p / dp
        step = np.max(np.abs(z_new - z)) if z.size else 0.0
        z = z_new
        if step <= tol * (1.0 + np.max(z)):
            break
    return z.astype(v.dtype, copy=False)


def prox_square(v, rho, **_):
    return rho * v / (1.0 + rho)


def prox_zero(v, rho, **_):
    return v


def prox_ind_box(v, rho, *, lower, upper, **_):
    return np.minimum(np.maximum(v, lower), upper)


PROX_REGISTRY = {
    Kernel.ABS: prox_abs,
    Kernel.EXP: prox_exp,
    Kernel.HUBER: prox_huber,
    Kernel.IDENTITY: prox_identity,
    Kernel.IND_BOX01: prox_ind_box01,
    Kernel.IND_EQ0: prox_ind_eq0,
    Kernel.IND_GE0: prox_ind_ge0,
    Kernel.IND_LE0: prox_ind_le0,
    Kernel.LOGISTIC: prox_logistic,
    Kernel.MAX_NEG0: prox_max_neg0,
    Kernel.MAX_POS0: prox_max_pos0,
    Kernel.NEG_ENTR: prox_neg_entr,
    Kernel.NEG_LOG: prox_neg_log,
    Kernel.RECIPR: prox_recipr,
    Kernel.SQUARE: prox_square,
    Kernel.ZERO: prox_zero,
    Kernel.IND_BOX: prox_ind_box,
}


# --- bare kernel values h(z); indicators contribute 0 once projected ---
def _tiny(z):
    return np.finfo(z.dtype).tiny


def _h_zero(z, **_):
    return np.zeros_like(z)


FUNC_REGISTRY = {
    Kernel.ABS: lambda z, **_: np.abs(z),
    Kernel.EXP: lambda z, **_: np.exp(z),
    Kernel.HUBER: lambda z, **_: np.where(np.abs(z) < 1.0, 0.5 * z * z, np.abs(z) - 0.5),
    Kernel.IDENTITY: lambda z, **_: z,
    Kernel.IND_BOX01: _h_zero,
    Kernel.IND_EQ0: _h_zero,
    Kernel.IND_GE0: _h_zero,
    Kernel.IND_LE0: _h_zero,
    Kernel.LOGISTIC: lambda z, **_: np.logaddexp(0.0, z),
    Kernel.MAX_NEG0: lambda z, **_: np.maximum(-z, 0.0),
    Kernel.MAX_POS0: lambda z, **_: np.maximum(z, 0.0),
    Kernel.NEG_ENTR: lambda z, **_: np.where(z > 0.0, z * np.log(np.maximum(z, _tiny(z))), 0.0),
    Kernel.NEG_LOG: lambda z, **_: -np.log(np.maximum(z, _tiny(z))),
    Kernel.RECIPR: lambda z, **_: 1.0 / np.maximum(z, _tiny(z)),
    Kernel.SQUARE: lambda z, **_: 0.5 * z * z,
    Kernel.ZERO: _h_zero,
    Kernel.IND_BOX: _h_zero,
}


@dataclass
class FunctionObj:
    """One term c*h(a*z - b) + d*z + (e/2)*z^2, with bounds for IND_BOX."""
    h: Kernel = Kernel.ZERO
    a: float = 1.0
    b: float = 0.0
    c: float = 1.0
    d: float = 0.0
    e: float = 0.0
    lower: float = -np.inf
    upper: float = np.inf

    def __post_init__(self):
        self.h = as_kernel(self.h)
        for name in ("a", "b", "c", "d", "e", "lower", "upper"):
            setattr(self, name, float(getattr(self, name)))
        _validate_params(np.array([self.a]), np.array([self.b]), np.array([self.c]),
                         np.array([self.d]), np.array([self.e]),
                         np.array([self.lower]), np.array([self.upper]))


ProximalSpec = FunctionObj


def _validate_params(a, b, c, d, e, lower, upper, what="function"):
    for name, arr in (("a", a), ("b", b), ("c", c), ("d", d), ("e", e)):
        if not np.all(np.isfinite(arr)):
            raise ConfigurationError(f"{what}: parameter {name} has non-finite entries")
    if np.any(c < 0):
        raise ConfigurationError(f"{what}: weight c must be >= 0 (min={c.min()})")
    if np.any(e < 0):
        raise ConfigurationError(f"{what}: quadratic term e must be >= 0 (min={e.min()})")
    if np.any(np.isnan(lower)) or np.any(np.isnan(upper)) or np.any(lower > upper):
        raise ConfigurationError(f"{what}: need lower <= upper for every box")


class FunctionVector:
    """
    Struct-of-arrays form of a list of FunctionObj. The parameter arrays are
    public and may be mutated between solves (e.g. g.c[:] = lam for a
    regularization path); validate() is re-run at the start of every solve.
    """
    _fields = ("a", "b", "c", "d", "e", "lower", "upper")

    def __init__(self, size, h=Kernel.ZERO, a=1.0, b=0.0, c=1.0, d=0.0, e=0.0,
                 lower=-np.inf, upper=np.inf, dtype=np.float64):
        size = int(size)
        self.dtype = np.dtype(dtype)
        if isinstance(h, (str, Kernel, int, np.integer)):
            h = np.full(size, int(as_kernel(h)), dtype=np.int32)
        elif isinstance(h, np.ndarray) and np.issubdtype(h.dtype, np.integer):
            h = h.astype(np.int32).ravel()
        else:
            h = np.array([int(as_kernel(k)) for k in h], dtype=np.int32)
        if h.shape != (size,):
            raise ConfigurationError(f"kernel array has shape {h.shape}, expected ({size},)")
        self.h = h
        for name, val in zip(self._fields, (a, b, c, d, e, lower, upper)):
            arr = np.array(np.broadcast_to(np.asarray(val, dtype=self.dtype), (size,)))
            setattr(self, name, arr)
        self._group_key = None
        self._groups = None
        self.validate()

    @classmethod
    def from_specs(cls, specs, dtype=np.float64):
        specs = [FunctionObj(**s) if isinstance(s, dict) else s for s in specs]
        cols = {name: [getattr(s, name) for s in specs] for name in cls._fields}
        return cls(len(specs), h=[s.h for s in specs], dtype=dtype, **cols)

    def __len__(self):
        return self.h.shape[0]

    def __getitem__(self, i):
        return FunctionObj(Kernel(int(self.h[i])), *(float(getattr(self, f)[i]) for f in self._fields))

    def __repr__(self):
        kinds = ", ".join(Kernel(k).name for k in np.unique(self.h))
        return f"FunctionVector(size={len(self)}, kernels=[{kinds}])"

    def copy(self):
        out = FunctionVector.__new__(FunctionVector)
        out.dtype = self.dtype
        out.h = self.h.copy()
        for name in self._fields:
            setattr(out, name, getattr(self, name).copy())
        out._group_key = None
        out._groups = None
        return out

    def astype(self, dtype):
        out = self.copy()
        out.dtype = np.dtype(dtype)
        for name in self._fields:
            setattr(out, name, getattr(out, name).astype(out.dtype))
        return out

    def validate(self, what="function"):
        bad = ~np.isin(self.h, _KERNEL_VALUES)
        if bad.any():
            raise ConfigurationError(f"{what}: unknown kernel id {int(self.h[bad][0])}")
        _validate_params(self.a, self.b, self.c, self.d, self.e, self.lower, self.upper, what)

    def snapshot(self):
        return (self.h.copy(),) + tuple(getattr(self, f).copy() for f in self._fields)

    def matches(self, snap) -> bool:
        if snap is None:
            return False
        cur = (self.h,) + tuple(getattr(self, f) for f in self._fields)
        return all(x.shape == y.shape and np.array_equal(x, y) for x, y in zip(cur, snap))

    def groups(self):
        """kind -> sorted index array; rebuilt only when h changes."""
        key = self.h.tobytes()
        if self._groups is None or key != self._group_key:
            order = np.argsort(self.h, kind="stable")
            kinds, starts = np.unique(self.h[order], return_index=True)
            bounds = list(starts[1:]) + [order.size]
            self._groups = {Kernel(int(k)): np.sort(order[s:t])
                            for k, s, t in zip(kinds, starts, bounds)}
            self._group_key = key
        return self._groups

    def scaled(self, s, side):
        """
        Equivalent terms after equilibration. side='row' for f (y_s = d*y),
        side='col' for g (x = e*x_s).
        """
        s = np.asarray(s, dtype=self.dtype)
        out = self.copy()
        if side == "row":
            out.a /= s; out.d /= s; out.e /= s * s
        elif side == "col":
            out.a *= s; out.d *= s; out.e *= s * s
        else:
            raise ValueError(f"side must be 'row' or 'col', got {side!r}")
        return out

    def _prox_block(self, kind, idx, v, rho, out):
        if idx.size == 0:
            return
        a = self.a[idx]; b = self.b[idx]; c = self.c[idx]
        d = self.d[idx]; e = self.e[idx]
        denom = e + rho
        vt = (v[idx] * rho - d) / denom
        active = (c > 0) & (a != 0)
        if active.all():
            u = a * vt - b
            r = denom / (c * a * a)
            u = PROX_REGISTRY[kind](u, r, lower=self.lower[idx], upper=self.upper[idx])
            out[idx] = (u + b) / a
            return
        res = vt
        if active.any():
            aa = a[active]; bb = b[active]
            u = aa * vt[active] - bb
            r = denom[active] / (c[active] * aa * aa)
            u = PROX_REGISTRY[kind](u, r, lower=self.lower[idx][active],
                                    upper=self.upper[idx][active])
            res[active] = (u + bb) / aa
        out[idx] = res

    def prox(self, v, rho, out=None, reducer=None):
        """
        Element-wise prox of every term at v with penalty rho. One vectorized
        kernel call per kind present (per chunk when a reducer is given).
        """
        v = np.asarray(v, dtype=self.dtype)
        n = len(self)
        if v.shape != (n,):
            raise ConfigurationError(f"prox: expected vector of length {n}, got {v.shape}")
        if out is None:
            out = np.empty_like(v)
        groups = self.groups()
        rho = self.dtype.type(rho)

        def _chunk(lo, hi):
            for kind, idx in groups.items():
                i0, i1 = np.searchsorted(idx, (lo, hi))
                self._prox_block(kind, idx[i0:i1], v, rho, out)

        if reducer is None:
            _chunk(0, n)
        else:
            reducer.map_ranges(n, _chunk)
        return out

    def evaluate(self, x):
        """sum_i c_i h_i(a_i x_i - b_i) + d_i x_i + (e_i/2) x_i^2"""
        x = np.asarray(x, dtype=self.dtype)
        total = float(np.dot(self.d, x) + 0.5 * np.dot(self.e, x * x))
        for kind, idx in self.groups().items():
            z = self.a[idx] * x[idx] - self.b[idx]
            hz = FUNC_REGISTRY[kind](z)
            total += float(np.dot(self.c[idx], hz))
        return total


def make_function_vector(spec, size, dtype=np.float64, what="function") -> FunctionVector:
    """
    Accepts a FunctionVector, a list of FunctionObj / dicts, or a single
    FunctionObj broadcast to every index.
    """
    if isinstance(spec, FunctionVector):
        if spec.dtype != np.dtype(dtype):
            raise ConfigurationError(
                f"{what}: terms are {spec.dtype} but the operator is {np.dtype(dtype)}")
        fv = spec
    elif isinstance(spec, FunctionObj):
        fv = FunctionVector(size, h=spec.h, a=spec.a, b=spec.b, c=spec.c, d=spec.d,
                            e=spec.e, lower=spec.lower, upper=spec.upper, dtype=dtype)
    else:
        fv = FunctionVector.from_specs(spec, dtype=dtype)
    if len(fv) != size:
        raise ConfigurationError(f"{what}: {len(fv)} terms for dimension {size}")
    return fv
