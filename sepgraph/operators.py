# sepgraph/operators.py
from __future__ import annotations
import numpy as np
import scipy.sparse as sp

from .errors import ConfigurationError

REPRESENTATIONS = ("dense-row", "dense-col", "sparse-row", "sparse-col")

_ALIASES = {
    "dense-row": "dense-row", "row": "dense-row", "C": "dense-row",
    "dense-col": "dense-col", "col": "dense-col", "F": "dense-col",
    "sparse-row": "sparse-row", "csr": "sparse-row",
    "sparse-col": "sparse-col", "csc": "sparse-col",
}


def _as_float(data, dtype=None):
    arr = np.asarray(data)
    if dtype is not None:
        return arr.astype(dtype, copy=False)
    if arr.dtype in (np.float32, np.float64):
        return arr
    if np.issubdtype(arr.dtype, np.integer) or arr.dtype == bool:
        return arr.astype(np.float64)
    raise ConfigurationError(f"unsupported operator dtype {arr.dtype}; use float32 or float64")


class LinearOperator:
    """
    Read-only linear map A (m x n). Subclasses fix the storage; the engine only
    uses multiply / multiply_transpose, the shape queries and the helpers below.
    """
    representation = None

    @property
    def shape(self):
        raise NotImplementedError

    @property
    def dtype(self):
        raise NotImplementedError

    def rows(self) -> int:
        return self.shape[0]

    def cols(self) -> int:
        return self.shape[1]

    def nnz(self) -> int:
        raise NotImplementedError

    def multiply(self, x, out=None):
        raise NotImplementedError

    def multiply_transpose(self, y, out=None):
        raise NotImplementedError

    def squared(self) -> "LinearOperator":
        """Element-wise square |A_ij|^2 (used by equilibration)."""
        raise NotImplementedError

    def scaled(self, d, e) -> "LinearOperator":
        """diag(d) A diag(e) as a new operator of the same representation."""
        raise NotImplementedError

    def gram(self, side):
        """I + A^T A (side='normal') or I + A A^T (side='outer')."""
        raise NotImplementedError

    def _check_in(self, x, n, what):
        x = np.asarray(x)
        if x.ndim != 1 or x.shape[0] != n:
            raise ConfigurationError(
                f"{what}: expected vector of length {n}, got shape {x.shape}")
        return x

    def _finish(self, res, out):
        res = np.asarray(res, dtype=self.dtype).ravel()
        if out is None:
            return res
        out[...] = res
        return out

    def __repr__(self):
        m, n = self.shape
        return f"{type(self).__name__}({self.representation}, m={m}, n={n}, nnz={self.nnz()})"


class DenseOperator(LinearOperator):
    def __init__(self, A, order="row"):
        A = _as_float(A)
        if A.ndim != 2:
            raise ConfigurationError(f"dense operator needs a 2-D array, got ndim={A.ndim}")
        if order in ("row", "dense-row", "C"):
            self._A = np.ascontiguousarray(A).view()
            self.representation = "dense-row"
        elif order in ("col", "dense-col", "F"):
            self._A = np.asfortranarray(A).view()
            self.representation = "dense-col"
        else:
            raise ConfigurationError(f"unknown dense order {order!r}")
        self._A.setflags(write=False)

    @property
    def shape(self):
        return self._A.shape

    @property
    def dtype(self):
        return self._A.dtype

    @property
    def array(self):
        return self._A

    def nnz(self) -> int:
        return int(self._A.size)

    def multiply(self, x, out=None):
        x = self._check_in(x, self.shape[1], "multiply")
        return self._finish(self._A @ x, out)

    def multiply_transpose(self, y, out=None):
        y = self._check_in(y, self.shape[0], "multiply_transpose")
        return self._finish(self._A.T @ y, out)

    def squared(self):
        return DenseOperator(self._A * self._A, order=self.representation)

    def scaled(self, d, e):
        d = np.asarray(d, dtype=self.dtype); e = np.asarray(e, dtype=self.dtype)
        return DenseOperator(d[:, None] * self._A * e[None, :], order=self.representation)

    def gram(self, side):
        A = self._A
        if side == "normal":
            K = A.T @ A
        else:
            K = A @ A.T
        K = np.array(K, dtype=self.dtype, copy=True)
        K[np.diag_indices_from(K)] += 1.0
        return K

    def to_scipy(self):
        return sp.csr_matrix(self._A)


class SparseOperator(LinearOperator):
    def __init__(self, A, order="row"):
        if not sp.issparse(A):
            raise ConfigurationError("SparseOperator expects a scipy.sparse matrix")
        dtype = _as_float(np.zeros(0, dtype=A.dtype)).dtype
        if order in ("row", "sparse-row", "csr"):
            self._A = A.tocsr().astype(dtype, copy=False)
            self.representation = "sparse-row"
        elif order in ("col", "sparse-col", "csc"):
            self._A = A.tocsc().astype(dtype, copy=False)
            self.representation = "sparse-col"
        else:
            raise ConfigurationError(f"unknown sparse order {order!r}")
        # A^T of a CSR is a CSC view over the same buffers; keep it for matvecs
        self._AT = self._A.T

    @property
    def shape(self):
        return self._A.shape

    @property
    def dtype(self):
        return self._A.dtype

    @property
    def matrix(self):
        return self._A

    def nnz(self) -> int:
        return int(self._A.nnz)

    def multiply(self, x, out=None):
        x = self._check_in(x, self.shape[1], "multiply")
        return self._finish(self._A @ x, out)

    def multiply_transpose(self, y, out=None):
        y = self._check_in(y, self.shape[0], "multiply_transpose")
        return self._finish(self._AT @ y, out)

    def squared(self):
        return SparseOperator(self._A.multiply(self._A), order=self.representation)

    def scaled(self, d, e):
        d = np.asarray(d, dtype=self.dtype); e = np.asarray(e, dtype=self.dtype)
        S = sp.diags(d) @ self._A @ sp.diags(e)
        return SparseOperator(S, order=self.representation)

    def gram(self, side):
        A = self._A
        if side == "normal":
            K = (A.T @ A).tocsc()
            k = A.shape[1]
        else:
            K = (A @ A.T).tocsc()
            k = A.shape[0]
        return (K + sp.identity(k, format="csc", dtype=self.dtype)).tocsc()

    def to_scipy(self):
        return self._A


def _check_compressed(values, pointer, indices, n_major, n_minor, what):
    values = _as_float(values).ravel()
    pointer = np.asarray(pointer).ravel()
    indices = np.asarray(indices).ravel()
    if not np.issubdtype(pointer.dtype, np.integer) or not np.issubdtype(indices.dtype, np.integer):
        raise ConfigurationError(f"{what}: pointer and index arrays must be integer")
    nnz = values.size
    if indices.size != nnz:
        raise ConfigurationError(f"{what}: {indices.size} indices for {nnz} values")
    if pointer.size != n_major + 1:
        raise ConfigurationError(
            f"{what}: pointer has length {pointer.size}, expected {n_major + 1}")
    if pointer[0] != 0 or pointer[-1] != nnz:
        raise ConfigurationError(
            f"{what}: pointer must start at 0 and end at nnz={nnz} "
            f"(got {pointer[0]} .. {pointer[-1]})")
    if np.any(np.diff(pointer) < 0):
        raise ConfigurationError(f"{what}: pointer array is not monotone")
    if nnz and (indices.min() < 0 or indices.max() >= n_minor):
        raise ConfigurationError(
            f"{what}: index out of range [0, {n_minor}) "
            f"(min={indices.min()}, max={indices.max()})")
    return values, pointer, indices


def build_operator(representation, shape, data, dtype=None) -> LinearOperator:
    """
    BuildOperator(representation, dimensions, data).

    representation: 'dense-row' | 'dense-col' | 'sparse-row' | 'sparse-col'
    shape: (m, n)
    data: dense -> flat array of m*n values in the stated order (or a 2-D array);
          sparse -> (values, pointer, indices) with pointer of length m+1 (row)
                    or n+1 (col).
    """
    rep = _ALIASES.get(representation)
    if rep is None:
        raise ConfigurationError(
            f"unknown representation {representation!r}; expected one of {REPRESENTATIONS}")
    m, n = (int(shape[0]), int(shape[1]))
    if m < 0 or n < 0:
        raise ConfigurationError(f"negative dimensions {shape}")

    if rep.startswith("dense"):
        arr = _as_float(data, dtype)
        order = "C" if rep == "dense-row" else "F"
        if arr.ndim == 1:
            if arr.size != m * n:
                raise ConfigurationError(f"dense data has {arr.size} values, expected {m * n}")
            arr = arr.reshape((m, n), order=order)
        elif arr.shape != (m, n):
            raise ConfigurationError(f"dense data has shape {arr.shape}, expected {(m, n)}")
        return DenseOperator(arr, order=rep)

    try:
        values, pointer, indices = data
    except (TypeError, ValueError):
        raise ConfigurationError("sparse data must be (values, pointer, indices)") from None
    if rep == "sparse-row":
        values, pointer, indices = _check_compressed(values, pointer, indices, m, n, rep)
        M = sp.csr_matrix((values, indices, pointer), shape=(m, n))
    else:
        values, pointer, indices = _check_compressed(values, pointer, indices, n, m, rep)
        M = sp.csc_matrix((values, indices, pointer), shape=(m, n))
    if dtype is not None:
        M = M.astype(dtype)
    return SparseOperator(M, order=rep)


def as_operator(A) -> LinearOperator:
    """Wrap a numpy array / scipy sparse matrix; operators pass through."""
    if isinstance(A, LinearOperator):
        return A
    if sp.issparse(A):
        order = "col" if A.format == "csc" else "row"
        return SparseOperator(A, order=order)
    arr = _as_float(A)
    if arr.ndim != 2:
        raise ConfigurationError(f"operator must be 2-D, got ndim={arr.ndim}")
    order = "col" if (arr.flags.f_contiguous and not arr.flags.c_contiguous) else "row"
    return DenseOperator(arr, order=order)
