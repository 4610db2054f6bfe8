"""Test cases for the hillbayes.fitting.nuts sampler core."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable

import numpy as np
import pytest

from hillbayes.fitting.data_structures import STAT_NAMES, ChainStatus, SamplerConfig
from hillbayes.fitting.errors import NumericError
from hillbayes.fitting.nuts import (
    Chain,
    DualAveraging,
    Metric,
    PhasePoint,
    WelfordEstimator,
    WindowedAdaptation,
    leapfrog,
)
from hillbayes.hillbayes_types import ArrayF, LogDensityFunc


def gaussian(scales: ArrayF | list[float]) -> LogDensityFunc:
    """Log density of an independent zero-mean Gaussian."""
    prec = 1.0 / np.asarray(scales, dtype=np.float64) ** 2

    def log_density(q: ArrayF) -> tuple[float, ArrayF]:
        return float(-0.5 * np.sum(prec * q**2)), -prec * q

    return log_density


def correlated(cov: ArrayF) -> LogDensityFunc:
    """Log density of a zero-mean Gaussian with covariance ``cov``."""
    prec = np.linalg.inv(cov)

    def log_density(q: ArrayF) -> tuple[float, ArrayF]:
        g = -prec @ q
        return float(0.5 * q @ g), g

    return log_density


def flat_box(q: ArrayF) -> tuple[float, ArrayF]:
    """Uniform density on the unit box; straight trajectories always leave it."""
    lp = 0.0 if np.all(np.abs(q) < 1.0) else -np.inf
    return lp, np.zeros_like(q)


def origin(dim: int) -> Callable[[np.random.Generator], ArrayF]:
    """Initializer returning a fixed small offset from the origin."""
    return lambda rng: np.full(dim, 0.1)


###############################################################################
# Building blocks
###############################################################################


def test_leapfrog_conserves_energy_and_reverses() -> None:
    """Small steps conserve the Hamiltonian; negating the step retraces the path."""
    log_density = gaussian([1.0, 2.0])
    metric = Metric.unit(2)
    q0 = np.array([0.5, -1.0])
    lp, grad = log_density(q0)
    start = PhasePoint(q0, np.array([1.0, 0.3]), lp, grad)
    point = start
    for _ in range(100):
        point = leapfrog(log_density, point, 0.01, metric)
    assert point.hamiltonian(metric) == pytest.approx(start.hamiltonian(metric), abs=1e-3)
    for _ in range(100):
        point = leapfrog(log_density, point, -0.01, metric)
    np.testing.assert_allclose(point.q, q0, atol=1e-10)
    np.testing.assert_allclose(point.p, start.p, atol=1e-10)


def test_hamiltonian_infinite_outside_support() -> None:
    """Points with -inf density have infinite energy, never NaN."""
    point = PhasePoint(np.zeros(2), np.ones(2), -np.inf, np.zeros(2))
    assert point.hamiltonian(Metric.unit(2)) == math.inf


def test_metric_momentum_covariance(rng: np.random.Generator) -> None:
    """Momenta are drawn from Normal(0, M) with M the inverse of inv_metric."""
    inv = np.array([[2.0, 0.5], [0.5, 1.0]])
    metric = Metric(inv)
    p = np.array([metric.sample_momentum(rng) for _ in range(20000)])
    np.testing.assert_allclose(np.cov(p.T), np.linalg.inv(inv), atol=0.05)
    v = np.array([1.0, -1.0])
    assert metric.kinetic(v) == pytest.approx(0.5 * v @ inv @ v)
    diag = Metric(np.array([4.0, 0.25]))
    q = np.array([diag.sample_momentum(rng) for _ in range(20000)])
    np.testing.assert_allclose(np.std(q, axis=0), [0.5, 2.0], rtol=0.05)


def test_dual_averaging_direction() -> None:
    """High acceptance grows the step size, low acceptance shrinks it."""
    da = DualAveraging(0.8, 0.05, 0.75, 10.0)
    da.restart(1.0)
    high = da.update(1.0)
    da.restart(1.0)
    low = da.update(0.0)
    assert high > low
    assert da.update(0.0) < 1.0
    # non-finite statistics count as rejections
    assert da.update(math.nan) < low


def test_dual_averaging_converges() -> None:
    """With acceptance 1 / (1 + eps) the averaged step approaches 0.25."""
    da = DualAveraging(0.8, 0.05, 0.75, 10.0)
    da.restart(1.0)
    step = 1.0
    for _ in range(3000):
        step = da.update(1.0 / (1.0 + step))
    assert da.final_step_size == pytest.approx(0.25, rel=0.15)


@pytest.mark.parametrize("dense", [False, True])
def test_welford_matches_numpy(dense: bool, rng: np.random.Generator) -> None:
    """Streaming estimates equal the sample (co)variance, regularized."""
    x = rng.normal(size=(50, 3)) * [1.0, 2.0, 0.5]
    est = WelfordEstimator(3, dense=dense)
    for row in x:
        est.add(row)
    n = 50
    shrink = 1e-3 * 5.0 / (n + 5.0)
    if dense:
        expected = n / (n + 5.0) * np.cov(x.T) + shrink * np.eye(3)
    else:
        expected = n / (n + 5.0) * np.var(x, axis=0, ddof=1) + shrink
    np.testing.assert_allclose(est.regularized(), expected, rtol=1e-10)
    np.testing.assert_allclose(est.mean, x.mean(axis=0))
    est.restart()
    assert est.n == 0


def _window_ends(num_warmup: int) -> list[int]:
    windows = WindowedAdaptation(num_warmup, 75, 50, 25, WelfordEstimator(1))
    return [i for i in range(num_warmup) if windows.learn(np.array([float(i)])) is not None]


def test_windows_default_schedule() -> None:
    """Slow windows double in size; the last one stretches to the terminal buffer."""
    assert _window_ends(1000) == [99, 149, 249, 449, 949]


def test_windows_short_warmup(caplog: pytest.LogCaptureFixture) -> None:
    """Warm-ups too short for the default buffers use 15%/75%/10%."""
    with caplog.at_level(logging.INFO):
        assert _window_ends(100) == [89]
    assert "rescaled to 15/75/10" in caplog.text


def test_windows_disabled() -> None:
    """Very short warm-ups adapt the step size only."""
    assert _window_ends(19) == []


def test_window_estimates_only_window_samples() -> None:
    """Samples from the initial buffer do not enter the estimate."""
    windows = WindowedAdaptation(200, 75, 50, 25, WelfordEstimator(1))
    result = None
    for i in range(100):
        result = windows.learn(np.array([1000.0 if i < 75 else float(i % 2)]))
    assert result is not None
    n = 25
    expected = n / (n + 5.0) * np.var([float(i % 2) for i in range(75, 100)], ddof=1)
    assert result[0] == pytest.approx(expected + 1e-3 * 5.0 / (n + 5.0))


###############################################################################
# Chains
###############################################################################


def test_nuts_gaussian_moments() -> None:
    """NUTS with a diagonal metric recovers the moments of a Gaussian."""
    cfg = SamplerConfig(chains=1, num_warmup=500, num_samples=1000)
    chain = Chain(gaussian([1.0, 2.0]), origin(2), cfg, np.random.default_rng(1))
    result = chain.run()
    assert result.status is ChainStatus.DONE
    assert result.complete
    assert result.n_retained == 1000
    q = result.positions
    np.testing.assert_allclose(q.mean(axis=0), [0.0, 0.0], atol=0.25)
    np.testing.assert_allclose(q.var(axis=0), [1.0, 4.0], rtol=0.3)
    # adapted metric approximates the posterior variances
    np.testing.assert_allclose(result.inv_metric, [1.0, 4.0], rtol=0.5)


def test_nuts_statistics() -> None:
    """Every retained draw records the full set of sample statistics."""
    cfg = SamplerConfig(chains=1, num_warmup=200, num_samples=200, max_tree_depth=4)
    result = Chain(gaussian([1.0, 1.0, 1.0]), origin(3), cfg, np.random.default_rng(2)).run()
    assert set(result.stats) == set(STAT_NAMES)
    assert np.all(result.stats["tree_depth"] <= 4)
    assert np.all(result.stats["n_steps"] >= 1)
    assert np.all(result.stats["n_steps"] <= 2**4 - 1)
    assert np.unique(result.stats["step_size"]).size == 1
    assert result.stats["step_size"][0] == result.step_size
    assert np.all((result.stats["acceptance_rate"] >= 0) & (result.stats["acceptance_rate"] <= 1))
    assert not np.any(result.stats["diverging"])
    assert np.mean(result.stats["acceptance_rate"]) > 0.5


def test_static_hmc() -> None:
    """Static HMC takes a fixed number of leapfrog steps per iteration."""
    cfg = SamplerConfig(chains=1, num_warmup=300, num_samples=1000, algorithm="hmc", num_leapfrog=3)
    result = Chain(gaussian([1.0, 1.0]), origin(2), cfg, np.random.default_rng(3)).run()
    assert result.status is ChainStatus.DONE
    assert np.all(result.stats["n_steps"] == 3)
    assert np.all(result.stats["tree_depth"] == 0)
    assert np.mean(result.stats["acceptance_rate"]) > 0.5
    np.testing.assert_allclose(result.positions.mean(axis=0), [0.0, 0.0], atol=0.25)


def test_dense_metric_learns_correlation() -> None:
    """A dense metric captures the correlation of the target."""
    cov = np.array([[1.0, 0.9], [0.9, 1.0]])
    cfg = SamplerConfig(chains=1, num_warmup=500, num_samples=1000, metric="dense")
    result = Chain(correlated(cov), origin(2), cfg, np.random.default_rng(4)).run()
    assert result.status is ChainStatus.DONE
    assert result.inv_metric.shape == (2, 2)
    assert result.inv_metric[0, 1] > 0.5
    assert np.corrcoef(result.positions.T)[0, 1] == pytest.approx(0.9, abs=0.05)


def test_chain_is_reproducible() -> None:
    """The same random stream gives the same draws."""
    cfg = SamplerConfig(chains=1, num_warmup=100, num_samples=50)
    runs = [
        Chain(gaussian([1.0, 3.0]), origin(2), cfg, np.random.default_rng(5)).run()
        for _ in range(2)
    ]
    np.testing.assert_array_equal(runs[0].positions, runs[1].positions)


def test_no_warmup_keeps_initial_step_size() -> None:
    """Without warm-up the heuristic initial step size is used throughout."""
    cfg = SamplerConfig(chains=1, num_warmup=0, num_samples=20)
    chain = Chain(gaussian([1.0]), origin(1), cfg, np.random.default_rng(6))
    result = chain.run()
    assert result.status is ChainStatus.DONE
    assert np.all(result.stats["step_size"] == result.step_size)
    np.testing.assert_array_equal(result.inv_metric, [1.0])


def _far_tail_point(log_density: LogDensityFunc) -> PhasePoint:
    q = np.array([100.0, 100.0])
    lp, grad = log_density(q)
    return PhasePoint(q, np.zeros(2), lp, grad)


def test_large_energy_drop_is_accepted() -> None:
    """A step that lowers the Hamiltonian by thousands accepts with probability one."""
    log_density = gaussian([1.0, 1.0])
    cfg = SamplerConfig(chains=1, algorithm="hmc", num_leapfrog=1)
    chain = Chain(log_density, origin(2), cfg, np.random.default_rng(0))
    chain.metric = Metric.unit(2)
    start = _far_tail_point(log_density)
    leaf = chain._leaf(start, 1, start.hamiltonian(chain.metric))
    assert leaf.log_weight > 1000
    assert leaf.sum_accept == 1.0
    assert not leaf.diverging
    step = chain.transition(start)
    assert step.accept_stat == 1.0
    assert not step.diverging
    assert step.point.q[0] < 100.0


@pytest.mark.parametrize("algorithm", ["nuts", "hmc"])
def test_chain_started_far_in_the_tail(algorithm: str) -> None:
    """Chains started at q = 100 on a standard Gaussian reach the bulk."""
    cfg = SamplerConfig(chains=1, num_warmup=300, num_samples=500, algorithm=algorithm)
    init = lambda _rng: np.full(2, 100.0)  # noqa: E731
    result = Chain(gaussian([1.0, 1.0]), init, cfg, np.random.default_rng(8)).run()
    assert result.status is ChainStatus.DONE
    assert np.all(np.isfinite(result.positions))
    np.testing.assert_allclose(result.positions.mean(axis=0), [0.0, 0.0], atol=0.4)


###############################################################################
# Stopping and failure
###############################################################################


def test_cancel_before_start() -> None:
    """A pre-set cancel event stops the chain with no draws."""
    cancel = threading.Event()
    cancel.set()
    cfg = SamplerConfig(chains=1, num_warmup=100, num_samples=100)
    chain = Chain(gaussian([1.0]), origin(1), cfg, np.random.default_rng(0), cancel=cancel)
    result = chain.run()
    assert result.status is ChainStatus.CANCELLED
    assert result.n_retained == 0
    assert result.message == "cancelled"
    assert chain.status is ChainStatus.CANCELLED


def test_cancel_during_sampling() -> None:
    """Cancelling mid-run keeps the draws collected so far."""
    cancel = threading.Event()
    target = gaussian([1.0, 1.0])
    calls = {"n": 0}

    def counting(q: ArrayF) -> tuple[float, ArrayF]:
        calls["n"] += 1
        if calls["n"] > 5000:
            cancel.set()
        return target(q)

    cfg = SamplerConfig(chains=1, num_warmup=100, num_samples=10000)
    result = Chain(counting, origin(2), cfg, np.random.default_rng(0), cancel=cancel).run()
    assert result.status is ChainStatus.CANCELLED
    assert 0 < result.n_retained < 10000
    assert np.all(np.isfinite(result.positions))
    assert result.stats["lp"].shape == (result.n_retained,)


def test_wall_clock_budget() -> None:
    """Chains exceeding ``max_seconds`` stop as CANCELLED."""
    target = gaussian([1.0])

    def slow(q: ArrayF) -> tuple[float, ArrayF]:
        time.sleep(0.001)
        return target(q)

    cfg = SamplerConfig(chains=1, num_warmup=200, num_samples=200, max_seconds=0.05)
    result = Chain(slow, origin(1), cfg, np.random.default_rng(0)).run()
    assert result.status is ChainStatus.CANCELLED
    assert "wall-clock" in result.message


def test_no_finite_initial_point() -> None:
    """A density that is nowhere finite raises NumericError."""
    cfg = SamplerConfig(chains=1, num_warmup=10, num_samples=10)

    def nowhere(q: ArrayF) -> tuple[float, ArrayF]:
        return -np.inf, np.zeros_like(q)

    chain = Chain(nowhere, origin(2), cfg, np.random.default_rng(0))
    with pytest.raises(NumericError, match="no initial point"):
        chain.run()
    assert chain.status is ChainStatus.FAILED


def test_consecutive_divergences_fail_warmup(caplog: pytest.LogCaptureFixture) -> None:
    """Persistent divergences end warm-up as FAILED, after the allowed retries."""
    cfg = SamplerConfig(
        chains=1,
        num_warmup=50,
        num_samples=50,
        max_consecutive_divergences=1,
        warmup_retries=1,
    )
    chain = Chain(flat_box, lambda rng: np.zeros(2), cfg, np.random.default_rng(0))
    with caplog.at_level(logging.WARNING):
        result = chain.run()
    assert result.status is ChainStatus.FAILED
    assert result.n_retained == 0
    assert result.warmup_divergences == 2
    assert "re-initializing" in caplog.text
    assert "consecutive divergent" in result.message
