# sepgraph/admm_core.py
from __future__ import annotations
import math
import multiprocessing
import os
import time

import numpy as np
import psutil
from threadpoolctl import threadpool_info

from .equilibration import unscale_dual, unscale_primal
from .errors import NumericalFailure
from .factors import FactorizationHandle
from .parallel import ParallelReducer
from .problem import GraphProblem, Result, Status

# bounded rho adaptation
RHO_MIN, RHO_MAX = 1e-4, 1e4
DELTA_MIN, DELTA_MAX = 1.05, 2.0
GAMMA = 1.01
TAU = 0.8
KAPPA = 0.9

# a stored CONVERGED iterate is only reused while these are unchanged
STOPPING_KEYS = ("abs_tol", "rel_tol", "max_iter", "gap_stop")


def _bytes_h(n):
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if n < 1024.0:
            return f"{n:,.1f} {unit}"
        n /= 1024.0
    return f"{n:.1f} PB"


def _tp_summary():
    rows = []
    for info in threadpool_info():
        rows.append({
            "api": info.get("internal_api"),
            "prefix": info.get("prefix"),
            "n_threads": info.get("num_threads"),
            "lib": os.path.basename(info.get("filepath", ""))})
    return rows


def _print_thread_env():
    keys = ["OMP_NUM_THREADS", "OPENBLAS_NUM_THREADS", "MKL_NUM_THREADS",
            "BLIS_NUM_THREADS", "NUMEXPR_NUM_THREADS"]
    env = {k: os.environ.get(k) for k in keys if os.environ.get(k) is not None}
    return ", ".join(f"{k}={v}" for k, v in env.items()) or "(unset)"


def _print_header(problem, factors, workers, proc):
    m, n = problem.shape
    print("=== ADMM run info ===")
    print(f"Host cores available : {os.cpu_count() or multiprocessing.cpu_count()}")
    tp = _tp_summary()
    if tp:
        for row in tp:
            print(f"Threadpool         : {row['api']} ({row['prefix']}) "
                  f"n_threads={row['n_threads']} lib={row['lib']}")
    else:
        print("Threadpool         : (none loaded)")
    print(f"Env threads        : {_print_thread_env()}")
    print(f"Problem            : m={m} n={n} nnz={problem.operator.nnz()} "
          f"projector={factors.projector.name} workers={workers}")
    mem = _bytes_h(proc.memory_info().rss)
    print(f"Process mem (start): {mem}, threads={proc.num_threads()}")
    print("----------------------")


def _print_summary(res: Result, proc):
    print("=== ADMM summary ===")
    print(f"status={res.status.name}  iters={res.iterations}  "
          f"total={res.solve_time:.3f}s  factor={res.factor_time:.3f}s")
    print(f"optval={res.objective:.6e}  pri={res.primal_residual:.2e}  "
          f"dua={res.dual_residual:.2e}  gap={res.gap:.2e}  rho={res.rho:.3g}")
    mem = _bytes_h(proc.memory_info().rss)
    print(f"final mem={mem}  threads={proc.num_threads()}")


def _prepare_state(problem, factors, warm_start):
    """
    Decide between carrying the stored iterate and a cold start, then apply any
    pending x0 / lambda0. Returns True when the stored iterate is already a
    converged solution of the current problem.
    """
    st = problem.state
    rho0 = problem.settings["rho"]
    x0, lambda0 = problem.pop_initial_guess()
    carry = warm_start and not st.is_fresh and st.scaling_key == factors.scaling_key
    if not carry:
        st.reset(rho0)
        st.scaling_key = factors.scaling_key
    if x0 is None and lambda0 is None:
        return (carry and st.last_status == Status.CONVERGED
                and problem.f.matches(st.f_snapshot) and problem.g.matches(st.g_snapshot)
                and st.settings_snapshot == _stopping_settings(problem))

    A = factors.operator
    rep = factors.report
    if x0 is not None:
        st.x = (x0 / rep.e).astype(st.dtype)
        st.y = A.multiply(st.x)
        st.x12 = st.x.copy()
        st.y12 = st.y.copy()
    if lambda0 is not None:
        lam_s = (lambda0 / rep.d).astype(st.dtype)
        st.yt = -lam_s / st.rho
        st.xt = -A.multiply_transpose(st.yt)
    return False


def _finish(problem, factors, x12, y12, lam_s, mu_s, *, f_s, g_s, iterations, status,
            r, s, gap, rho, t0) -> Result:
    x, y = unscale_primal(factors.report, x12, y12)
    lam, mu = unscale_dual(factors.report, lam_s, mu_s)
    obj = f_s.evaluate(y12) + g_s.evaluate(x12)
    # caller buffers are written once, after the iterate is final
    problem.x[:] = x
    problem.y[:] = y
    return Result(x=x, y=y, lam=lam, mu=mu, objective=float(obj),
                  iterations=int(iterations), status=status,
                  primal_residual=float(r), dual_residual=float(s), gap=float(gap),
                  rho=float(rho), solve_time=time.perf_counter() - t0,
                  factor_time=factors.factor_time)


def solve(problem: GraphProblem, factors: FactorizationHandle = None, *,
          warm_start: bool = False) -> Result:
    """
    Graph-form ADMM:  minimize f(y) + g(x)  s.t.  y = A x.

    Each iteration takes the prox of f and g, over-relaxes, projects back onto
    the graph through the cached factors and updates the scaled duals. Runs to
    CONVERGED, MAX_ITERS or NUMERICAL_FAILURE and always returns a Result.

    factors: a handle from allocate_factors(problem). When omitted a temporary
        handle is built for this call and released before returning.
    warm_start: continue from problem.state (same operator and scaling)
        instead of resetting it.
    """
    t0 = time.perf_counter()
    problem.validate()
    own = factors is None
    if own:
        s = problem.settings
        factors = FactorizationHandle().allocate(
            problem.operator, equilibrate=s["equilibrate"], equil_iter=s["equil_iter"],
            projector=s["projector"], rho=s["rho"], rho_drift=s["rho_drift"])
    try:
        factors.check(problem.operator)
        return _run(problem, factors, warm_start, t0)
    finally:
        if own:
            factors.release()


def _run(problem, factors, warm_start, t0):
    cfg = problem.settings
    st = problem.state
    m, n = problem.shape
    rep = factors.report
    A = factors.operator
    f_s = problem.f.scaled(rep.d, "row")
    g_s = problem.g.scaled(rep.e, "col")
    verbose = int(cfg["verbose"])
    proc = psutil.Process(os.getpid()) if verbose else None

    done = _prepare_state(problem, factors, warm_start)
    kw = dict(f_s=f_s, g_s=g_s, t0=t0)
    if done:
        r, s, gap = st.last_residuals
        res = _finish(problem, factors, st.x12, st.y12, st.lam, st.mu, iterations=0,
                      status=Status.CONVERGED, r=r, s=s, gap=gap, rho=st.rho, **kw)
        if verbose:
            _print_summary(res, proc)
        return res

    if m == 0 or n == 0:
        # nothing couples x and y: x is g's prox at 0 and y = A x
        x12 = g_s.prox(np.zeros(n, dtype=st.dtype), st.rho)
        y12 = A.multiply(x12)
        zeros_m, zeros_n = np.zeros(m, dtype=st.dtype), np.zeros(n, dtype=st.dtype)
        res = _finish(problem, factors, x12, y12, zeros_m, zeros_n, iterations=0,
                      status=Status.CONVERGED, r=0.0, s=0.0, gap=0.0, rho=st.rho, **kw)
        _store(problem, st, x12, y12, x12, y12, zeros_n, zeros_m, zeros_m, zeros_n,
               st.rho, Status.CONVERGED, (0.0, 0.0, 0.0))
        return res

    alpha = float(cfg["alpha"])
    atol, rtol = float(cfg["abs_tol"]), float(cfg["rel_tol"])
    max_iter = int(cfg["max_iter"])
    gap_stop = bool(cfg["gap_stop"])
    adaptive = bool(cfg["adaptive_rho"])
    print_every = max(1, int(cfg["print_every"]))

    rho = st.rho
    if factors.needs_refresh(rho):
        factors.refresh(rho)

    x, y, xt, yt = st.x.copy(), st.y.copy(), st.xt.copy(), st.yt.copy()
    x12, y12 = st.x12, st.y12
    lam, mu = st.lam, st.mu
    r = s = gap = np.inf
    delta, xi = DELTA_MIN, 1.0
    k_up = k_down = 0
    sqrt_m, sqrt_n, sqrt_mn = math.sqrt(m), math.sqrt(n), math.sqrt(m + n)
    status = Status.MAX_ITERS
    k = 0

    with ParallelReducer(workers=cfg["workers"], chunk_size=cfg["chunk_size"]) as red:
        if verbose:
            _print_header(problem, factors, red.workers, proc)
        for k in range(1, max_iter + 1):
            x_prev, y_prev = x, y

            # proximal step
            nx12 = g_s.prox(x - xt, rho, reducer=red)
            ny12 = f_s.prox(y - yt, rho, reducer=red)
            nmu = rho * (x - xt - nx12)
            nlam = rho * (y - yt - ny12)
            ngap = abs(float(np.dot(nlam, ny12) + np.dot(nmu, nx12)))

            # over-relaxation, then projection onto y = A x
            xr = alpha * nx12 + (1.0 - alpha) * x
            yr = alpha * ny12 + (1.0 - alpha) * y
            try:
                nx, ny = factors.project(xr + xt, yr + yt)
            except NumericalFailure as exc:
                if verbose:
                    print(f"iter {k:4d}  projection failed: {exc}")
                status = Status.NUMERICAL_FAILURE
                break

            # dual update
            nxt = xt + (xr - nx)
            nyt = yt + (yr - ny)

            # residuals
            nr = red.nrm2(A.multiply(nx12) - ny12)
            ns = rho * red.nrm2((nx - x_prev) + A.multiply_transpose(ny - y_prev))
            if not (math.isfinite(nr) and math.isfinite(ns) and math.isfinite(ngap)
                    and np.all(np.isfinite(nx12)) and np.all(np.isfinite(ny12))):
                status = Status.NUMERICAL_FAILURE
                break

            x, y, xt, yt = nx, ny, nxt, nyt
            x12, y12, lam, mu = nx12, ny12, nlam, nmu
            r, s, gap = nr, ns, ngap

            eps_pri = max(atol * sqrt_m, rtol * red.nrm2(y12))
            eps_dua = max(atol * sqrt_n, rtol * rho * red.nrm2(xt))
            converged = r < eps_pri and s < eps_dua
            if gap_stop and converged:
                obj = f_s.evaluate(y12) + g_s.evaluate(x12)
                converged = gap < max(atol * sqrt_mn, rtol * abs(obj))

            if verbose >= 2 and (k == 1 or k % print_every == 0 or converged):
                print(f"iter {k:4d}  pri={r:.2e}/{eps_pri:.2e} dua={s:.2e}/{eps_dua:.2e} "
                      f"gap={gap:.2e} rho={rho:.3g}")

            if converged:
                status = Status.CONVERGED
                break

            if adaptive:
                if s < xi * eps_dua and r > xi * eps_pri and TAU * k > k_down:
                    if rho < RHO_MAX:
                        rho = min(rho * delta, RHO_MAX)
                        xt /= delta
                        yt /= delta
                        delta = min(GAMMA * delta, DELTA_MAX)
                        k_up = k
                elif s > xi * eps_dua and r < xi * eps_pri and TAU * k > k_up:
                    if rho > RHO_MIN:
                        rho = max(rho / delta, RHO_MIN)
                        xt *= delta
                        yt *= delta
                        delta = min(GAMMA * delta, DELTA_MAX)
                        k_down = k
                elif s < xi * eps_dua and r < xi * eps_pri:
                    xi *= KAPPA
                else:
                    delta = max(delta / GAMMA, DELTA_MIN)
                if factors.needs_refresh(rho):
                    factors.refresh(rho)

    iterations = k
    res = _finish(problem, factors, x12, y12, lam, mu, iterations=iterations, status=status,
                  r=r, s=s, gap=gap, rho=rho, **kw)
    if status == Status.NUMERICAL_FAILURE:
        st.reset(cfg["rho"])
        st.last_status = status
    else:
        _store(problem, st, x, y, x12, y12, xt, yt, lam, mu, rho, status, (r, s, gap))
    if verbose:
        _print_summary(res, proc)
    return res


def _store(problem, st, x, y, x12, y12, xt, yt, lam, mu, rho, status, residuals):
    st.x, st.y, st.x12, st.y12 = x, y, x12, y12
    st.xt, st.yt, st.lam, st.mu = xt, yt, lam, mu
    st.rho = float(rho)
    st.last_status = status
    st.last_residuals = residuals
    st.f_snapshot = problem.f.snapshot()
    st.g_snapshot = problem.g.snapshot()
    st.settings_snapshot = _stopping_settings(problem)


def _stopping_settings(problem):
    return {k: problem.settings[k] for k in STOPPING_KEYS}
