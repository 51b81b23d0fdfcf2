# tests/test_convergence.py
import json
import math

import numpy as np
import pytest
from scipy import stats

from rode_convergence.convergence import ConvergenceSuite, fit_order, solve, solve_parallel
from rode_convergence.errors import ConfigurationError
from rode_convergence.fbm import FractionalBrownianMotionProcess
from rode_convergence.processes import ProductProcess, WienerProcess
from rode_convergence.solvers import CustomMethod, RandomEuler, RandomHeun


T0, TF = 0.0, 1.0
NTGT = 2**12
NS = [2**4, 2**5, 2**6]
M = 500


# --------------------------
# Exact solutions used as targets
# --------------------------
# x' = c(t) x has x(t) = x0 exp(int c); the integral of a Wiener combination is
# the trapezoid sum plus an independent N(0, dt^3/12) correction per step.

def _log_growth(yt, dt, rng):
    incr = (yt[1:] + yt[:-1]) * dt / 2 + math.sqrt(dt**3 / 12) * rng.standard_normal(yt.shape[0] - 1)
    return np.concatenate([[0.0], np.cumsum(incr)])


def exact_scalar(xt, t0, tf, x0, f, yt, rng):
    dt = (tf - t0) / (xt.shape[0] - 1)
    xt[:] = x0 * np.exp(_log_growth(yt, dt, rng))


def exact_scalar_mixed(xt, t0, tf, x0, f, yt, rng):
    dt = (tf - t0) / (xt.shape[0] - 1)
    y = (yt[:, 0] + 3 * yt[:, 1]) / 4
    xt[:] = x0 * np.exp(_log_growth(y, dt, rng))


def exact_vector(xt, t0, tf, x0, f, yt, rng):
    dt = (tf - t0) / (xt.shape[0] - 1)
    xt[:] = np.outer(np.exp(_log_growth(yt, dt, rng)), x0)


def exact_vector_mixed(xt, t0, tf, x0, f, yt, rng):
    dt = (tf - t0) / (xt.shape[0] - 1)
    y = (yt[:, 0] + 3 * yt[:, 1]) / 4
    xt[:] = np.outer(np.exp(_log_growth(y, dt, rng)), x0)


def f_scalar(t, x, y):
    return y * x


def f_scalar_mixed(t, x, y):
    return (y[0] + 3 * y[1]) / 4 * x


def f_vector(dx, t, x, y):
    np.multiply(x, y, out=dx)


def f_vector_mixed(dx, t, x, y):
    np.multiply(x, (y[0] + 3 * y[1]) / 4, out=dx)


def _wiener():
    return WienerProcess(T0, TF, 0.0)


def _wiener2():
    return ProductProcess(WienerProcess(T0, TF, 0.0), WienerProcess(T0, TF, 0.0))


def _mvnormal():
    return stats.multivariate_normal(np.zeros(2), np.eye(2))


def _check_order(res):
    np.testing.assert_allclose(res.deltas, (TF - T0) / (np.array(NS) - 1))
    assert abs(res.p - 1.0) < 0.1, f"p = {res.p:.3f}"


# --------------------------
# Suite construction
# --------------------------

@pytest.fixture(scope="module")
def suite_kwargs():
    return dict(t0=T0, tf=TF, x0law=stats.norm(), f=f_scalar, noise=_wiener(),
                target=RandomEuler(), method=RandomEuler(), ntgt=NTGT, ns=NS, m=10)


def test_non_divisible_ntgt_raises_before_sampling(suite_kwargs):
    calls = []

    class Spy(WienerProcess):
        def sample(self, rng, yt):
            calls.append(1)
            super().sample(rng, yt)

    kw = dict(suite_kwargs, noise=Spy(T0, TF), ntgt=1000, ns=[3, 10])
    with pytest.raises(ConfigurationError):
        ConvergenceSuite(**kw)
    assert calls == []


@pytest.mark.parametrize("change", [
    dict(ntgt=0),
    dict(ns=[16, 0]),
    dict(ns=[]),
    dict(t0=1.0, tf=1.0),
    dict(t0=2.0, tf=1.0),
    dict(m=0),
    dict(target=lambda *a: None),
    dict(method="euler"),
    dict(x0law=stats.poisson(3.0)),
    dict(x0law="normal"),
    dict(noise=stats.norm()),
    dict(noise=FractionalBrownianMotionProcess(T0, TF, 0.0, 0.3, 2**8)),
    dict(noise=WienerProcess(0.0, 50.0)),
    dict(ns=[16.7, 32]),
    dict(ntgt=4096.5),
    dict(m=2.5),
    dict(ns=[16, 32, NTGT]),
])
def test_invalid_suite_raises(suite_kwargs, change):
    with pytest.raises(ConfigurationError):
        ConvergenceSuite(**dict(suite_kwargs, **change))


def test_cache_shapes(suite_kwargs):
    s = ConvergenceSuite(**suite_kwargs)
    assert s.yt.shape == (NTGT,)
    assert s.xt.shape == (NTGT,)
    assert s.xnt.shape == (max(NS),)

    v = ConvergenceSuite(**dict(suite_kwargs, x0law=_mvnormal(), f=f_vector, noise=_wiener2()))
    assert v.yt.shape == (NTGT, 2)
    assert v.xt.shape == (NTGT, 2)
    assert v.xnt.shape == (max(NS), 2)


def test_point_mass_initial_conditions(suite_kwargs):
    s = ConvergenceSuite(**dict(suite_kwargs, x0law=1.5))
    assert s.draw_x0(np.random.default_rng(0)) == 1.5
    v = ConvergenceSuite(**dict(suite_kwargs, x0law=[1.0, 2.0], f=f_vector))
    np.testing.assert_array_equal(v.draw_x0(np.random.default_rng(0)), [1.0, 2.0])


# --------------------------
# Order estimates
# --------------------------

def test_scalar_scalar_exact_target():
    rng = np.random.default_rng(123)
    suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                             CustomMethod(exact_scalar, rng), RandomEuler(), NTGT, NS, M)
    res = solve(rng, suite)
    _check_order(res)


def test_scalar_scalar_euler_target():
    rng = np.random.default_rng(123)
    suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                             RandomEuler(), RandomEuler(), NTGT, NS, M)
    _check_order(solve(rng, suite))


def test_scalar_vector_exact_target():
    rng = np.random.default_rng(321)
    suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar_mixed, _wiener2(),
                             CustomMethod(exact_scalar_mixed, rng), RandomEuler(), NTGT, NS, M)
    _check_order(solve(rng, suite))


def test_vector_scalar_exact_target():
    rng = np.random.default_rng(7)
    suite = ConvergenceSuite(T0, TF, _mvnormal(), f_vector, _wiener(),
                             CustomMethod(exact_vector, rng), RandomEuler(), NTGT, NS, M)
    _check_order(solve(rng, suite))


def test_vector_vector_exact_target():
    rng = np.random.default_rng(8)
    suite = ConvergenceSuite(T0, TF, _mvnormal(), f_vector_mixed, _wiener2(),
                             CustomMethod(exact_vector_mixed, rng), RandomEuler(), NTGT, NS, M)
    _check_order(solve(rng, suite))


@pytest.mark.slow
def test_vector_vector_euler_target():
    rng = np.random.default_rng(9)
    suite = ConvergenceSuite(T0, TF, _mvnormal(), f_vector_mixed, _wiener2(),
                             RandomEuler(), RandomEuler(), NTGT, NS, M)
    _check_order(solve(rng, suite))


@pytest.mark.slow
def test_heun_on_wiener_noise_is_still_first_order():
    # Wiener paths are only Holder-1/2, so Heun gains no order here
    rng = np.random.default_rng(10)
    suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                             CustomMethod(exact_scalar, rng), RandomHeun(), NTGT, NS, M)
    _check_order(solve(rng, suite))


# --------------------------
# Result structure and reproducibility
# --------------------------

@pytest.fixture(scope="module")
def small_result():
    rng = np.random.default_rng(42)
    suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                             CustomMethod(exact_scalar, rng), RandomEuler(), 2**10, NS, 50)
    return solve(rng, suite)


def test_result_layout(small_result):
    res = small_result
    assert res.trajerrors.shape == (max(NS), len(NS))
    assert np.all(res.trajerrors[0] == 0.0)
    for i, n in enumerate(NS):
        assert np.all(res.trajerrors[n:, i] == 0.0)
    np.testing.assert_array_equal(res.errors, res.trajerrors.max(axis=0))
    assert np.all(np.diff(res.errors) < 0)


def test_result_to_dict_is_json_ready(small_result):
    d = small_result.to_dict()
    blob = json.loads(json.dumps(d))
    assert blob["suite"]["ns"] == NS
    assert blob["suite"]["x0law"] == "norm"
    assert len(blob["trajerrors"]) == max(NS)
    assert blob["p"] == pytest.approx(small_result.p)


def test_same_seed_same_result():
    def run():
        rng = np.random.default_rng(5)
        suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                                 CustomMethod(exact_scalar, rng), RandomEuler(), 2**10, NS, 20)
        return solve(rng, suite)

    a, b = run(), run()
    np.testing.assert_array_equal(a.trajerrors, b.trajerrors)
    assert a.p == b.p


def _euler_target(xt, t0, tf, x0, f, yt):
    RandomEuler().solve(xt, t0, tf, x0, f, yt)


def test_zero_error_resolution_left_out_of_fit():
    rng = np.random.default_rng(7)
    suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                             CustomMethod(_euler_target), RandomEuler(), 2**8, [16, 32, 2**8], 20)
    res = solve(rng, suite)
    assert res.errors[-1] == 0.0
    assert np.all(res.errors[:-1] > 0.0)
    assert np.isfinite(res.p) and np.isfinite(res.lc)
    assert math.isnan(res.eps)


def test_single_positive_error_gives_nan_order():
    rng = np.random.default_rng(7)
    suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                             CustomMethod(_euler_target), RandomEuler(), 2**8, [16, 2**8], 5)
    with pytest.warns(RuntimeWarning):
        res = solve(rng, suite)
    assert math.isnan(res.p) and math.isnan(res.lc) and math.isnan(res.eps)


def test_suite_equality_is_identity(suite_kwargs):
    s = ConvergenceSuite(**suite_kwargs)
    assert s == s
    assert (s == s.copy()) is False
    assert s != ConvergenceSuite(**suite_kwargs)


def test_verbose_progress(capsys):
    rng = np.random.default_rng(0)
    suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                             RandomEuler(), RandomEuler(), 2**8, NS, 4)
    solve(rng, suite, verbose=True, print_every=2)
    out = capsys.readouterr().out
    assert "[convergence] sample=2/4" in out
    assert "[convergence] sample=4/4" in out
    assert "[convergence done] p=" in out


# --------------------------
# Parallel
# --------------------------

@pytest.fixture(scope="module")
def parallel_suite():
    return ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                            CustomMethod(exact_scalar, np.random.default_rng(0)), RandomEuler(),
                            2**10, NS, 120)


def test_parallel_reproducible_and_worker_independent(parallel_suite):
    a = solve_parallel(parallel_suite, base_seed=77, n_workers=2, batch_size=30)
    b = solve_parallel(parallel_suite, base_seed=77, n_workers=4, batch_size=30)
    np.testing.assert_allclose(a.trajerrors, b.trajerrors, rtol=1e-12)
    assert a.p == pytest.approx(b.p)


def test_parallel_seed_changes_result(parallel_suite):
    a = solve_parallel(parallel_suite, base_seed=1, n_workers=2, batch_size=60)
    b = solve_parallel(parallel_suite, base_seed=2, n_workers=2, batch_size=60)
    assert not np.allclose(a.trajerrors, b.trajerrors)


def test_parallel_leaves_suite_caches_untouched(parallel_suite):
    parallel_suite.yt[:] = -1.0
    solve_parallel(parallel_suite, base_seed=3, n_workers=2)
    assert np.all(parallel_suite.yt == -1.0)


@pytest.mark.slow
def test_parallel_order():
    suite = ConvergenceSuite(T0, TF, stats.norm(), f_scalar, _wiener(),
                             CustomMethod(exact_scalar, np.random.default_rng(0)), RandomEuler(),
                             NTGT, NS, M)
    res = solve_parallel(suite, base_seed=2024, n_workers=4)
    _check_order(res)


# --------------------------
# Order fit
# --------------------------

def test_fit_order_exact_power_law():
    deltas = np.array([0.1, 0.05, 0.025, 0.0125])
    lc, p, eps = fit_order(deltas, 3.0 * deltas**1.5)
    assert p == pytest.approx(1.5)
    assert lc == pytest.approx(math.log(3.0))
    assert eps == pytest.approx(0.0, abs=1e-8)


def test_fit_order_interval_covers_noisy_slope():
    rng = np.random.default_rng(0)
    deltas = 2.0 ** -np.arange(3, 9)
    errors = 2.0 * deltas * np.exp(0.05 * rng.standard_normal(deltas.size))
    _lc, p, eps = fit_order(deltas, errors)
    assert eps > 0
    assert abs(p - 1.0) < eps + 0.05


def test_fit_order_two_points_has_no_interval():
    lc, p, eps = fit_order([0.1, 0.05], [0.2, 0.1])
    assert p == pytest.approx(1.0)
    assert math.isnan(eps)


@pytest.mark.parametrize("deltas, errors", [
    ([0.1, 0.05, 0.025], [0.2, 0.0, 0.05]),
    ([0.1, 0.05, 0.025], [0.2, 0.1]),
    ([-0.1, 0.05, 0.025], [0.2, 0.1, 0.05]),
    ([0.1], [0.2]),
])
def test_fit_order_rejects_bad_input(deltas, errors):
    with pytest.raises(ValueError):
        fit_order(deltas, errors)
