# Run with:  python examples/lasso_path.py --m 2000 --n 500 --nnz 50000
import os, time, argparse

# (Optional) pin threads early
ncores = os.cpu_count() or 1
os.environ.setdefault("OMP_NUM_THREADS", str(ncores))
os.environ.setdefault("OPENBLAS_NUM_THREADS", str(ncores))
os.environ.setdefault("MKL_NUM_THREADS", str(ncores))

import numpy as np
import pandas as pd

from sepgraph import build_operator, lasso_path


def random_csr(m, n, nnz, seed=0):
    """
    Random m x n sparse matrix in compressed-row arrays with about nnz entries
    drawn uniformly from [-1, 1]. Column indices within a row are sorted.
    """
    rng = np.random.default_rng(seed)
    nnz = min(int(nnz), m * n)
    flat = np.sort(rng.choice(m * n, size=nnz, replace=False))
    rows, cols = np.divmod(flat, n)
    row_ptr = np.zeros(m + 1, dtype=np.int64)
    np.cumsum(np.bincount(rows, minlength=m), out=row_ptr[1:])
    values = rng.uniform(-1.0, 1.0, nnz)
    return values, row_ptr, cols.astype(np.int64)


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--m", type=int, default=1000)
    ap.add_argument("--n", type=int, default=200)
    ap.add_argument("--nnz", type=int, default=20000)
    ap.add_argument("--n_lambda", type=int, default=50)
    ap.add_argument("--ratio", type=float, default=1e-2, help="lambda_min / lambda_max")
    ap.add_argument("--tol", type=float, default=1e-3, help="early-stop tolerance on x")
    ap.add_argument("--workers", type=int, default=1)
    ap.add_argument("--verbose", type=int, default=0)
    ap.add_argument("--out", default=None, help="optional CSV for the per-lambda table")
    args = ap.parse_args()

    values, row_ptr, col_ind = random_csr(args.m, args.n, args.nnz)
    A = build_operator("sparse-row", (args.m, args.n), (values, row_ptr, col_ind))
    b = 4.0 * np.random.default_rng(1).standard_normal(args.m)

    t0 = time.perf_counter()
    path = lasso_path(A, b, n_lambda=args.n_lambda, lambda_min_ratio=args.ratio,
                      tol=args.tol, workers=args.workers, verbose=args.verbose)
    t1 = time.perf_counter()

    frame = path.to_frame(threshold=1e-6)
    with pd.option_context("display.width", 140, "display.max_rows", 200):
        print(frame)
    print(f"\nsolves={len(path)}  stopped_early={path.stopped_early}  "
          f"factor={path.factor_time:.3f}s  total={t1 - t0:.3f}s")
    if args.out:
        frame.to_csv(args.out, index=False)
        print(f"saved table -> {args.out}")


if __name__ == "__main__":
    main()
