"""Proximal kernels: optimality conditions and the affine term wrapper."""

import numpy as np
import pytest
from scipy.special import expit

from sepgraph import ConfigurationError, FunctionObj, FunctionVector, Kernel, ParallelReducer
from sepgraph.prox_catalog import PROX_REGISTRY, as_kernel, make_function_vector

V = np.linspace(-4.0, 4.0, 33)
RHOS = (0.3, 1.0, 5.0)


def _prox(kind, v, rho, **kw):
    return PROX_REGISTRY[kind](v.copy(), rho, **kw)


class TestKernelOptimality:
    """0 in dh(z) + rho (z - v) for every kernel."""

    def test_abs(self):
        for rho in RHOS:
            z = _prox(Kernel.ABS, V, rho)
            np.testing.assert_allclose(z, np.sign(V) * np.maximum(np.abs(V) - 1.0 / rho, 0.0))

    def test_square(self):
        for rho in RHOS:
            z = _prox(Kernel.SQUARE, V, rho)
            np.testing.assert_allclose(z + rho * (z - V), 0.0, atol=1e-12)

    def test_huber(self):
        for rho in RHOS:
            z = _prox(Kernel.HUBER, V, rho)
            np.testing.assert_allclose(np.clip(z, -1.0, 1.0) + rho * (z - V), 0.0, atol=1e-12)

    def test_identity(self):
        z = _prox(Kernel.IDENTITY, V, 2.0)
        np.testing.assert_allclose(z, V - 0.5)

    def test_logistic(self):
        for rho in RHOS:
            z = _prox(Kernel.LOGISTIC, V, rho)
            np.testing.assert_allclose(expit(z) + rho * (z - V), 0.0, atol=1e-9)

    def test_exp(self):
        for rho in RHOS:
            z = _prox(Kernel.EXP, V, rho)
            np.testing.assert_allclose(np.exp(z) + rho * (z - V), 0.0, atol=1e-8)

    def test_exp_large_argument(self):
        v = np.array([150.0, 400.0])
        z = _prox(Kernel.EXP, v, 1.0)
        assert np.all(np.isfinite(z))
        # e^z = v - z
        np.testing.assert_allclose(np.log(v - z), z, rtol=1e-10)

    def test_neg_log(self):
        for rho in RHOS:
            z = _prox(Kernel.NEG_LOG, V, rho)
            assert np.all(z > 0)
            np.testing.assert_allclose(-1.0 / z + rho * (z - V), 0.0, atol=1e-9)

    def test_neg_entr(self):
        for rho in RHOS:
            z = _prox(Kernel.NEG_ENTR, V, rho)
            assert np.all(z > 0)
            np.testing.assert_allclose(np.log(z) + 1.0 + rho * (z - V), 0.0, atol=1e-8)

    def test_recipr(self):
        for rho in RHOS:
            z = _prox(Kernel.RECIPR, V, rho)
            assert np.all(z > 0)
            np.testing.assert_allclose(-1.0 / z ** 2 + rho * (z - V), 0.0, atol=1e-8)

    def test_max_pos0(self):
        z = _prox(Kernel.MAX_POS0, np.array([-1.0, 0.2, 3.0]), 2.0)
        np.testing.assert_allclose(z, [-1.0, 0.0, 2.5])

    def test_max_neg0(self):
        z = _prox(Kernel.MAX_NEG0, np.array([1.0, -0.2, -3.0]), 2.0)
        np.testing.assert_allclose(z, [1.0, 0.0, -2.5])

    def test_indicators(self):
        v = np.array([-2.0, 0.5, 3.0])
        np.testing.assert_allclose(_prox(Kernel.IND_GE0, v, 1.0), [0.0, 0.5, 3.0])
        np.testing.assert_allclose(_prox(Kernel.IND_LE0, v, 1.0), [-2.0, 0.0, 0.0])
        np.testing.assert_allclose(_prox(Kernel.IND_EQ0, v, 1.0), 0.0)
        np.testing.assert_allclose(_prox(Kernel.IND_BOX01, v, 1.0), [0.0, 0.5, 1.0])
        np.testing.assert_allclose(_prox(Kernel.IND_BOX, v, 1.0, lower=-1.0, upper=2.0),
                                   [-1.0, 0.5, 2.0])

    def test_zero(self):
        np.testing.assert_allclose(_prox(Kernel.ZERO, V, 3.0), V)


class TestFunctionVector:

    def test_affine_square(self):
        rng = np.random.default_rng(3)
        n = 40
        a = rng.uniform(0.5, 2.0, n) * rng.choice([-1.0, 1.0], n)
        b = rng.standard_normal(n)
        c = rng.uniform(0.1, 3.0, n)
        d = rng.standard_normal(n)
        e = rng.uniform(0.0, 1.0, n)
        v = rng.standard_normal(n)
        rho = 1.7
        fv = FunctionVector(n, h=Kernel.SQUARE, a=a, b=b, c=c, d=d, e=e)
        z = fv.prox(v, rho)
        # c a (a z - b) + d + e z + rho (z - v) = 0
        np.testing.assert_allclose(c * a * (a * z - b) + d + e * z + rho * (z - v), 0.0, atol=1e-10)

    def test_affine_abs(self):
        fv = FunctionVector(3, h=Kernel.ABS, a=2.0, b=1.0, c=0.5)
        z = fv.prox(np.array([3.0, 0.6, -1.0]), 1.0)
        # u = 2z - 1 soft-thresholded at c a^2 / rho = 2
        u = 2.0 * np.array([3.0, 0.6, -1.0]) - 1.0
        expected = (np.sign(u) * np.maximum(np.abs(u) - 2.0, 0.0) + 1.0) / 2.0
        np.testing.assert_allclose(z, expected)

    def test_zero_weight_is_identity(self):
        fv = FunctionVector(4, h=Kernel.ABS, c=0.0)
        v = np.array([-1.0, 0.1, 2.0, 5.0])
        np.testing.assert_allclose(fv.prox(v, 2.0), v)

    def test_mixed_kernels_and_chunks(self):
        rng = np.random.default_rng(7)
        n = 1000
        kinds = rng.choice([Kernel.ABS, Kernel.SQUARE, Kernel.LOGISTIC, Kernel.IND_GE0,
                            Kernel.HUBER], n)
        fv = FunctionVector(n, h=np.array([int(k) for k in kinds]), c=rng.uniform(0.1, 2.0, n))
        v = rng.standard_normal(n)
        ref = fv.prox(v, 0.8)
        with ParallelReducer(workers=1, chunk_size=64) as red:
            seq = fv.prox(v, 0.8, reducer=red)
        with ParallelReducer(workers=4, chunk_size=64) as red:
            par = fv.prox(v, 0.8, reducer=red)
        np.testing.assert_array_equal(seq, par)
        np.testing.assert_allclose(ref, par, rtol=1e-10, atol=1e-12)
        for kind in (Kernel.ABS, Kernel.SQUARE, Kernel.IND_GE0):
            idx = kinds == kind
            single = FunctionVector(int(idx.sum()), h=kind, c=fv.c[idx])
            np.testing.assert_allclose(ref[idx], single.prox(v[idx], 0.8))

    def test_from_specs_and_getitem(self):
        specs = [FunctionObj(Kernel.SQUARE, b=1.0), FunctionObj("abs", c=0.5),
                 {"h": "ind_box", "lower": -1.0, "upper": 1.0}]
        fv = FunctionVector.from_specs(specs)
        assert len(fv) == 3
        assert fv[1].h == Kernel.ABS and fv[1].c == 0.5
        assert fv[2].upper == 1.0

    def test_evaluate(self):
        fv = FunctionVector(3, h=Kernel.SQUARE, b=np.array([1.0, 0.0, -1.0]), d=1.0, e=2.0)
        x = np.array([1.0, 2.0, 3.0])
        expected = 0.5 * np.sum((x - fv.b) ** 2) + np.sum(x) + np.sum(x ** 2)
        assert fv.evaluate(x) == pytest.approx(expected)

    def test_scaled_terms_match(self):
        fv = FunctionVector(3, h=Kernel.HUBER, a=2.0, b=0.5, c=1.5, d=0.3, e=0.7)
        s = np.array([0.5, 2.0, 4.0])
        y = np.array([0.4, -1.0, 2.0])
        # f_s(s * y) == f(y) for rows; g_s(x / s) == g(x) for columns
        assert fv.scaled(s, "row").evaluate(s * y) == pytest.approx(fv.evaluate(y))
        assert fv.scaled(s, "col").evaluate(y / s) == pytest.approx(fv.evaluate(y))

    def test_snapshot(self):
        fv = FunctionVector(3, h=Kernel.ABS, c=1.0)
        snap = fv.snapshot()
        assert fv.matches(snap)
        fv.c[:] = 2.0
        assert not fv.matches(snap)


class TestValidation:

    def test_negative_weight(self):
        with pytest.raises(ConfigurationError):
            FunctionObj(Kernel.ABS, c=-1.0)
        with pytest.raises(ConfigurationError):
            FunctionVector(2, h=Kernel.ABS, c=np.array([1.0, -1.0]))

    def test_unknown_kernel(self):
        with pytest.raises(ConfigurationError):
            as_kernel("cube")
        with pytest.raises(ConfigurationError):
            as_kernel(99)

    def test_bad_box(self):
        with pytest.raises(ConfigurationError):
            FunctionObj(Kernel.IND_BOX, lower=2.0, upper=1.0)

    def test_mutation_revalidated(self):
        fv = FunctionVector(2, h=Kernel.ABS)
        fv.e[0] = -1.0
        with pytest.raises(ConfigurationError):
            fv.validate("g")

    def test_count_mismatch(self):
        with pytest.raises(ConfigurationError):
            make_function_vector([FunctionObj(Kernel.ABS)] * 3, 4, what="g")

    def test_precision_mismatch(self):
        fv = FunctionVector(3, h=Kernel.SQUARE)
        with pytest.raises(ConfigurationError):
            make_function_vector(fv, 3, dtype=np.float32, what="f")
        assert make_function_vector(fv, 3, dtype=np.float64) is fv

    def test_broadcast_single_spec(self):
        fv = make_function_vector(FunctionObj(Kernel.ABS, c=0.25), 5)
        assert len(fv) == 5
        np.testing.assert_allclose(fv.c, 0.25)
