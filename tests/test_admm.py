"""ADMM engine: closed forms, status handling, warm starts and reporting."""

import numpy as np
import pytest
import scipy.sparse as sp

from sepgraph import (ConfigurationError, FunctionObj, FunctionVector, GraphProblem, Kernel,
                      NumericalFailure, Status, allocate_factors, as_operator, build_operator,
                      solve)

TIGHT = dict(abs_tol=1e-7, rel_tol=1e-7, max_iter=10000)


def _lasso_problem(A, b, lam, **settings):
    m, n = as_operator(A).shape
    f = FunctionVector(m, h=Kernel.SQUARE, b=b)
    g = FunctionVector(n, h=Kernel.ABS, c=lam)
    return GraphProblem(A, f, g, **settings)


class TestClosedForms:

    def test_soft_threshold_scenario(self):
        b = np.array([1.0, -2.0, 3.0])
        problem = GraphProblem(np.eye(3),
                               [FunctionObj(Kernel.SQUARE, b=bi) for bi in b],
                               [FunctionObj(Kernel.ABS, c=0.5)] * 3, **TIGHT)
        res = problem.solve()
        assert res.status == Status.CONVERGED
        np.testing.assert_allclose(res.x, [0.5, -1.5, 2.5], atol=1e-4)
        np.testing.assert_allclose(res.y, res.x, atol=1e-4)
        np.testing.assert_allclose(problem.x, res.x)
        np.testing.assert_allclose(problem.y, res.y)

    def test_diagonal_ridge(self):
        a = np.array([0.5, 1.0, 2.0, 4.0])
        b = np.array([1.0, -1.0, 2.0, 0.5])
        lam = 0.7
        problem = GraphProblem(np.diag(a), FunctionVector(4, h=Kernel.SQUARE, b=b),
                               FunctionVector(4, h=Kernel.SQUARE, c=lam), **TIGHT)
        res = solve(problem)
        assert res.converged
        np.testing.assert_allclose(res.x, a * b / (a * a + lam), atol=1e-5)

    def test_identity_square_both(self):
        b = np.array([2.0, -4.0, 6.0, 0.0])
        problem = GraphProblem(np.eye(4), FunctionVector(4, h=Kernel.SQUARE, b=b),
                               FunctionVector(4, h=Kernel.SQUARE), **TIGHT)
        res = solve(problem)
        np.testing.assert_allclose(res.x, b / 2.0, atol=1e-5)

    def test_dense_ridge(self):
        rng = np.random.default_rng(0)
        A = rng.standard_normal((25, 8))
        b = rng.standard_normal(25)
        lam = 0.3
        problem = GraphProblem(A, FunctionVector(25, h=Kernel.SQUARE, b=b),
                               FunctionVector(8, h=Kernel.SQUARE, c=lam), **TIGHT)
        res = solve(problem)
        expected = np.linalg.solve(A.T @ A + lam * np.eye(8), A.T @ b)
        assert res.converged
        np.testing.assert_allclose(res.x, expected, atol=1e-4)

    def test_wide_lasso_duals(self):
        rng = np.random.default_rng(1)
        A = rng.standard_normal((10, 30))
        b = rng.standard_normal(10)
        res = solve(_lasso_problem(A, b, 0.5, **TIGHT))
        assert res.converged
        # lam = f'(y) and mu = -A^T lam at the optimum
        np.testing.assert_allclose(res.lam, res.y - b, atol=1e-4)
        np.testing.assert_allclose(res.mu, -A.T @ res.lam, atol=1e-4)
        assert np.all(np.abs(res.mu) <= 0.5 + 1e-4)

    def test_objective(self):
        rng = np.random.default_rng(2)
        A = rng.standard_normal((20, 6))
        b = rng.standard_normal(20)
        res = solve(_lasso_problem(A, b, 0.2, **TIGHT))
        expected = 0.5 * np.sum((A @ res.x - b) ** 2) + 0.2 * np.sum(np.abs(res.x))
        assert res.objective == pytest.approx(expected, rel=1e-4)

    def test_all_representations_agree(self):
        rng = np.random.default_rng(3)
        A = rng.standard_normal((12, 5))
        A[np.abs(A) < 0.5] = 0.0
        b = rng.standard_normal(12)
        csr, csc = sp.csr_matrix(A), sp.csc_matrix(A)
        ops = [build_operator("dense-row", A.shape, A.ravel(order="C")),
               build_operator("dense-col", A.shape, A.ravel(order="F")),
               build_operator("sparse-row", A.shape, (csr.data, csr.indptr, csr.indices)),
               build_operator("sparse-col", A.shape, (csc.data, csc.indptr, csc.indices))]
        xs = [solve(_lasso_problem(op, b, 0.1, **TIGHT)).x for op in ops]
        for x in xs[1:]:
            np.testing.assert_allclose(x, xs[0], atol=1e-4)

    def test_float32(self):
        A = np.diag([1.0, 2.0, 3.0]).astype(np.float32)
        b = np.array([1.0, 2.0, 3.0])
        problem = GraphProblem(A, FunctionVector(3, h=Kernel.SQUARE, b=b, dtype=np.float32),
                               FunctionVector(3, h=Kernel.ZERO, dtype=np.float32))
        res = solve(problem)
        assert res.x.dtype == np.float32
        np.testing.assert_allclose(res.x, [1.0, 1.0, 1.0], atol=1e-2)


class TestEquilibrationInvariance:

    def test_scaled_and_raw_agree(self):
        rng = np.random.default_rng(4)
        A = rng.standard_normal((30, 10)) * 10.0 ** rng.uniform(-1, 1, 10)[None, :]
        b = rng.standard_normal(30)
        x_eq = solve(_lasso_problem(A, b, 0.3, equilibrate=True, **TIGHT)).x
        x_raw = solve(_lasso_problem(A, b, 0.3, equilibrate=False, **TIGHT)).x
        np.testing.assert_allclose(x_eq, x_raw, atol=1e-4)


class TestWarmStart:

    def test_idempotent_after_convergence(self):
        rng = np.random.default_rng(5)
        A = rng.standard_normal((20, 8))
        b = rng.standard_normal(20)
        problem = _lasso_problem(A, b, 0.4)
        first = solve(problem)
        assert first.converged
        again = solve(problem, warm_start=True)
        assert again.converged
        assert again.iterations <= 1
        np.testing.assert_allclose(again.x, first.x, atol=1e-8)

    def test_idempotent_with_shared_factors(self):
        rng = np.random.default_rng(6)
        A = rng.standard_normal((20, 8))
        problem = _lasso_problem(A, rng.standard_normal(20), 0.4)
        with allocate_factors(problem) as fac:
            first = solve(problem, fac)
            again = solve(problem, fac, warm_start=True)
        assert again.iterations <= 1
        np.testing.assert_allclose(again.x, first.x, atol=1e-8)

    def test_tightened_tolerance_iterates_again(self):
        rng = np.random.default_rng(9)
        A = rng.standard_normal((20, 8))
        problem = _lasso_problem(A, rng.standard_normal(20), 0.4)
        first = solve(problem)
        assert first.converged
        problem.update(**TIGHT)
        res = solve(problem, warm_start=True)
        assert res.iterations >= 1
        assert res.converged
        # unchanged settings reuse the stored iterate again
        assert solve(problem, warm_start=True).iterations == 0

    def test_changed_specs_iterate_again(self):
        rng = np.random.default_rng(7)
        A = rng.standard_normal((20, 8))
        problem = _lasso_problem(A, rng.standard_normal(20), 0.4)
        solve(problem)
        problem.g.c[:] = 0.1
        res = solve(problem, warm_start=True)
        assert res.iterations >= 1
        assert res.converged

    def test_cold_start_resets(self):
        rng = np.random.default_rng(8)
        A = rng.standard_normal((20, 8))
        problem = _lasso_problem(A, rng.standard_normal(20), 0.4)
        first = solve(problem)
        second = solve(problem)
        assert second.iterations == first.iterations
        np.testing.assert_allclose(second.x, first.x)

    def test_initial_guess(self):
        rng = np.random.default_rng(9)
        A = rng.standard_normal((20, 8))
        b = rng.standard_normal(20)
        ref = solve(_lasso_problem(A, b, 0.4, **TIGHT))
        problem = _lasso_problem(A, b, 0.4)
        problem.initialize(x0=ref.x, lambda0=ref.lam)
        res = solve(problem)
        assert res.converged
        np.testing.assert_allclose(res.x, ref.x, atol=1e-2)

    def test_initial_guess_shape_checked(self):
        problem = _lasso_problem(np.eye(3), np.ones(3), 0.1)
        with pytest.raises(ConfigurationError):
            problem.initialize(x0=np.zeros(4))


class TestTermination:

    def test_iterations_bounded_across_seeds(self):
        iters = []
        for seed in range(5):
            rng = np.random.default_rng(100 + seed)
            A = rng.standard_normal((40, 12))
            b = rng.standard_normal(40)
            res = solve(_lasso_problem(A, b, 0.5))
            assert res.converged
            iters.append(res.iterations)
        assert max(iters) < 1000

    def test_max_iters_status(self):
        rng = np.random.default_rng(10)
        A = rng.standard_normal((20, 8))
        problem = _lasso_problem(A, rng.standard_normal(20), 0.4, max_iter=3)
        res = solve(problem)
        assert res.status == Status.MAX_ITERS
        assert res.iterations == 3
        assert np.all(np.isfinite(res.x))

    def test_gap_stop(self):
        rng = np.random.default_rng(11)
        A = rng.standard_normal((20, 8))
        res = solve(_lasso_problem(A, rng.standard_normal(20), 0.4, gap_stop=True))
        assert res.converged

    def test_fixed_rho(self):
        rng = np.random.default_rng(12)
        A = rng.standard_normal((20, 8))
        res = solve(_lasso_problem(A, rng.standard_normal(20), 0.4, adaptive_rho=False, rho=2.0))
        assert res.converged
        assert res.rho == 2.0

    def test_empty_rows(self):
        g = FunctionVector(3, h=Kernel.SQUARE, b=np.array([1.0, 2.0, 3.0]))
        problem = GraphProblem(np.zeros((0, 3)), FunctionVector(0, h=Kernel.SQUARE), g)
        res = solve(problem)
        assert res.status == Status.CONVERGED
        assert res.iterations == 0
        # prox of 0.5 (x - b)^2 at v = 0 with rho = 1
        np.testing.assert_allclose(res.x, [0.5, 1.0, 1.5])
        assert res.y.shape == (0,)


def _broken(c, d):
    raise NumericalFailure("factor lost")


class TestNumericalFailure:

    def _problem(self):
        rng = np.random.default_rng(13)
        A = rng.standard_normal((10, 4))
        return _lasso_problem(A, rng.standard_normal(10), 0.1)

    def test_projector_breakdown(self):
        problem = self._problem()
        fac = allocate_factors(problem)
        fac.projector.project = _broken
        try:
            res = solve(problem, fac)
        finally:
            fac.release()
        assert res.status == Status.NUMERICAL_FAILURE
        assert np.all(np.isfinite(res.x))
        np.testing.assert_array_equal(problem.x, res.x)

    def test_non_finite_iterate(self):
        problem = self._problem()
        m, n = problem.shape
        fac = allocate_factors(problem)
        fac.projector.project = lambda c, d: (np.full(n, np.nan), np.full(m, np.nan))
        try:
            res = solve(problem, fac)
        finally:
            fac.release()
        assert res.status == Status.NUMERICAL_FAILURE
        assert np.all(np.isfinite(res.x))
        assert np.all(np.isfinite(problem.x))

    def test_failure_resets_warm_start(self):
        problem = self._problem()
        fac = allocate_factors(problem)
        fac.projector.project = _broken
        try:
            solve(problem, fac)
        finally:
            fac.release()
        res = solve(problem, warm_start=True)
        assert res.converged
        assert res.iterations > 1


class TestParallel:

    def test_workers_match_sequential(self):
        rng = np.random.default_rng(14)
        A = rng.standard_normal((50, 20))
        b = rng.standard_normal(50)
        # chunks of 8 split both x (20) and y (50) across the pool
        seq = solve(_lasso_problem(A, b, 0.3, workers=1, chunk_size=8))
        par = solve(_lasso_problem(A, b, 0.3, workers=4, chunk_size=8))
        assert seq.iterations == par.iterations
        np.testing.assert_array_equal(seq.x, par.x)
        np.testing.assert_array_equal(seq.y, par.y)
        np.testing.assert_array_equal(seq.lam, par.lam)
        assert seq.primal_residual == par.primal_residual

    def test_mixed_kernels_across_workers(self):
        rng = np.random.default_rng(16)
        A = rng.standard_normal((40, 12))
        labels = np.where(rng.standard_normal(40) >= 0, 1.0, -1.0)
        f = FunctionVector(40, h=Kernel.LOGISTIC)
        g = FunctionVector(12, h=[Kernel.ABS, Kernel.SQUARE, Kernel.IND_BOX] * 4,
                           c=0.2, lower=-1.0, upper=1.0)
        runs = [solve(GraphProblem(-labels[:, None] * A, f, g, workers=w, chunk_size=5,
                                   max_iter=200))
                for w in (1, 3)]
        assert runs[0].iterations == runs[1].iterations
        np.testing.assert_array_equal(runs[0].x, runs[1].x)

    def test_bad_chunk_size(self):
        with pytest.raises(ConfigurationError):
            _lasso_problem(np.eye(2), np.ones(2), 0.1, chunk_size=0)


class TestConfiguration:

    def test_unknown_setting(self):
        with pytest.raises(ConfigurationError):
            GraphProblem(np.eye(2), FunctionObj(Kernel.ABS), FunctionObj(Kernel.ABS), tolerance=1.0)

    def test_bad_alpha(self):
        with pytest.raises(ConfigurationError):
            GraphProblem(np.eye(2), FunctionObj(Kernel.ABS), FunctionObj(Kernel.ABS), alpha=2.5)

    def test_term_count_mismatch(self):
        with pytest.raises(ConfigurationError):
            GraphProblem(np.eye(3), [FunctionObj(Kernel.ABS)] * 2, FunctionObj(Kernel.ABS))

    def test_solve_without_terms(self):
        with pytest.raises(ConfigurationError):
            solve(GraphProblem(np.eye(2)))

    def test_read_only_buffer(self):
        x = np.zeros(2)
        x.setflags(write=False)
        with pytest.raises(ConfigurationError):
            GraphProblem(np.eye(2), FunctionObj(Kernel.ABS), FunctionObj(Kernel.ABS), x=x)

    def test_caller_buffers_written(self):
        x = np.full(3, -7.0)
        y = np.full(3, -7.0)
        problem = GraphProblem(np.eye(3), FunctionVector(3, h=Kernel.SQUARE, b=1.0),
                               FunctionVector(3, h=Kernel.ZERO), x=x, y=y)
        res = solve(problem)
        assert problem.x is x
        np.testing.assert_allclose(x, res.x)
        np.testing.assert_allclose(y, res.y)

    def test_update_settings(self):
        problem = _lasso_problem(np.eye(2), np.ones(2), 0.1)
        problem.update(max_iter=1)
        assert solve(problem).iterations == 1
        with pytest.raises(ConfigurationError):
            problem.update(rho=-1.0)


def test_verbose_report(capsys):
    rng = np.random.default_rng(15)
    A = rng.standard_normal((10, 4))
    solve(_lasso_problem(A, rng.standard_normal(10), 0.1, verbose=2))
    out = capsys.readouterr().out
    assert "=== ADMM run info ===" in out
    assert "iter    1" in out
    assert "=== ADMM summary ===" in out
