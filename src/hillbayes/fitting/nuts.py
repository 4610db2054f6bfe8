"""Hamiltonian Monte Carlo sampler core.

Each `Chain` owns its state exclusively and runs the state machine

    UNINITIALIZED -> WARMUP -> SAMPLING -> DONE

(or ends in FAILED / CANCELLED). Transitions are either multinomial No-U-Turn
trajectories (recursive doubling with the generalized no-U-turn criterion and
biased progressive sampling) or static HMC trajectories with a Metropolis
correction. During warm-up the step size is tuned by dual averaging and the
inverse metric (diagonal or dense) is estimated in doubling windows, after
Hoffman & Gelman (2014) and Betancourt (2017).

The sampler only sees a callable returning ``(log_density, gradient)`` of an
unconstrained vector; non-finite densities count as infinite energy.
"""

from __future__ import annotations

import logging
import math
import threading
import time
import typing
from dataclasses import dataclass, field

import numpy as np

from hillbayes.fitting.data_structures import STAT_NAMES, ChainStatus
from hillbayes.fitting.errors import NumericError

if typing.TYPE_CHECKING:
    from collections.abc import Callable

    from hillbayes.fitting.data_structures import SamplerConfig
    from hillbayes.hillbayes_types import ArrayF, LogDensityFunc

logger = logging.getLogger(__name__)

#: Step sizes outside this range abort the step-size search.
MIN_STEP_SIZE = 1e-12
MAX_STEP_SIZE = 1e7
#: Windowed metric adaptation needs at least this many warm-up iterations.
MIN_ADAPT_WARMUP = 20


class Metric:
    """Euclidean metric defined by an inverse mass matrix (diagonal or dense)."""

    def __init__(self, inv_metric: ArrayF) -> None:
        self.inv = np.asarray(inv_metric, dtype=np.float64)
        self.dense = self.inv.ndim == 2
        if self.dense:
            self._chol = np.linalg.cholesky(np.linalg.inv(self.inv))
        else:
            self._scale = 1.0 / np.sqrt(self.inv)

    @classmethod
    def unit(cls, dim: int, dense: bool = False) -> Metric:
        """Identity metric."""
        return cls(np.eye(dim) if dense else np.ones(dim))

    def sample_momentum(self, rng: np.random.Generator) -> ArrayF:
        """Draw ``p ~ Normal(0, M)``."""
        z = rng.standard_normal(self.inv.shape[0])
        return self._chol @ z if self.dense else z * self._scale

    def velocity(self, p: ArrayF) -> ArrayF:
        """``M^-1 p``."""
        return self.inv @ p if self.dense else self.inv * p

    def kinetic(self, p: ArrayF) -> float:
        """Kinetic energy ``p' M^-1 p / 2``."""
        return 0.5 * float(p @ self.velocity(p))


@dataclass
class PhasePoint:
    """Position, momentum and cached density/gradient."""

    q: ArrayF
    p: ArrayF
    lp: float
    grad: ArrayF

    def hamiltonian(self, metric: Metric) -> float:
        """Total energy; infinite outside the support."""
        h = -self.lp + metric.kinetic(self.p)
        return h if math.isfinite(h) else math.inf


def leapfrog(
    log_density: LogDensityFunc, point: PhasePoint, step_size: float, metric: Metric
) -> PhasePoint:
    """One leapfrog step; a negative ``step_size`` integrates backward in time."""
    p = point.p + 0.5 * step_size * point.grad
    q = point.q + step_size * metric.velocity(p)
    lp, grad = log_density(q)
    return PhasePoint(q, p + 0.5 * step_size * grad, lp, grad)


class DualAveraging:
    """Nesterov dual averaging of the log step size."""

    def __init__(self, target: float, gamma: float, kappa: float, t0: float) -> None:
        self.target = target
        self.gamma = gamma
        self.kappa = kappa
        self.t0 = t0
        self.restart(1.0)

    def restart(self, step_size: float) -> None:
        """Restart around ``10 * step_size``."""
        self.counter = 0
        self.s_bar = 0.0
        self.x_bar = 0.0
        self.mu = math.log(10.0 * step_size)

    def update(self, accept_stat: float) -> float:
        """Feed one acceptance statistic, return the next step size."""
        self.counter += 1
        accept_stat = min(1.0, accept_stat) if math.isfinite(accept_stat) else 0.0
        eta = 1.0 / (self.counter + self.t0)
        self.s_bar = (1.0 - eta) * self.s_bar + eta * (self.target - accept_stat)
        x = self.mu - self.s_bar * math.sqrt(self.counter) / self.gamma
        x_eta = self.counter ** (-self.kappa)
        self.x_bar = (1.0 - x_eta) * self.x_bar + x_eta * x
        return math.exp(x)

    @property
    def final_step_size(self) -> float:
        """Averaged step size used after warm-up."""
        return math.exp(self.x_bar)


class WelfordEstimator:
    """Streaming (co)variance, regularized towards a small multiple of identity."""

    def __init__(self, dim: int, dense: bool = False) -> None:
        self.dim = dim
        self.dense = dense
        self.restart()

    def restart(self) -> None:
        """Forget all samples."""
        self.n = 0
        self.mean = np.zeros(self.dim)
        self.m2 = np.zeros((self.dim, self.dim)) if self.dense else np.zeros(self.dim)

    def add(self, x: ArrayF) -> None:
        """Add one sample."""
        self.n += 1
        delta = x - self.mean
        self.mean += delta / self.n
        if self.dense:
            self.m2 += np.outer(delta, x - self.mean)
        else:
            self.m2 += delta * (x - self.mean)

    def regularized(self) -> ArrayF:
        """Sample (co)variance shrunk towards ``1e-3 * I``."""
        n = self.n
        cov = self.m2 / max(n - 1, 1)
        shrink = 1e-3 * (5.0 / (n + 5.0))
        if self.dense:
            return (n / (n + 5.0)) * cov + shrink * np.eye(self.dim)
        return (n / (n + 5.0)) * cov + shrink


class WindowedAdaptation:
    """Warm-up schedule for metric estimation.

    A fast initial buffer (step size only), a series of doubling slow windows
    in which the metric is estimated, and a terminal buffer (step size only).
    """

    def __init__(
        self,
        num_warmup: int,
        init_buffer: int,
        term_buffer: int,
        base_window: int,
        estimator: WelfordEstimator,
    ) -> None:
        self.num_warmup = num_warmup
        self.enabled = num_warmup >= MIN_ADAPT_WARMUP
        if self.enabled and init_buffer + base_window + term_buffer > num_warmup:
            init_buffer = int(0.15 * num_warmup)
            term_buffer = int(0.1 * num_warmup)
            base_window = num_warmup - (init_buffer + term_buffer)
            logger.info(
                "Short warm-up: adaptation windows rescaled to %d/%d/%d.",
                init_buffer,
                base_window,
                term_buffer,
            )
        self.init_buffer = init_buffer
        self.term_buffer = term_buffer
        self.base_window = base_window
        self.estimator = estimator
        self.restart()

    def restart(self) -> None:
        """Start the schedule over."""
        self.counter = 0
        self.window_size = self.base_window
        self.next_window = self.init_buffer + self.base_window - 1
        self.estimator.restart()

    @property
    def _last_window_end(self) -> int:
        return self.num_warmup - self.term_buffer - 1

    def _in_window(self) -> bool:
        return (
            self.init_buffer <= self.counter < self.num_warmup - self.term_buffer
            and self.counter != self.num_warmup
        )

    def _end_of_window(self) -> bool:
        return self.counter == self.next_window and self.counter != self.num_warmup

    def _compute_next_window(self) -> None:
        if self.next_window == self._last_window_end:
            return
        self.window_size *= 2
        self.next_window = self.counter + self.window_size
        if self.next_window != self._last_window_end:
            boundary = self.next_window + 2 * self.window_size
            if boundary >= self.num_warmup - self.term_buffer:
                self.next_window = self._last_window_end

    def learn(self, q: ArrayF) -> ArrayF | None:
        """Record a warm-up position; return a new inverse metric at window ends."""
        if not self.enabled:
            return None
        if self._in_window():
            self.estimator.add(q)
        if self._end_of_window():
            self._compute_next_window()
            inv_metric = self.estimator.regularized()
            self.estimator.restart()
            self.counter += 1
            return inv_metric
        self.counter += 1
        return None


@dataclass
class Transition:
    """Outcome of one sampler iteration."""

    point: PhasePoint
    accept_stat: float
    tree_depth: int
    n_leapfrog: int
    diverging: bool
    energy: float


@dataclass
class _Tree:
    """A contiguous trajectory segment built by NUTS doubling."""

    left: PhasePoint
    right: PhasePoint
    proposal: PhasePoint
    log_weight: float
    rho: ArrayF
    turning: bool = False
    diverging: bool = False
    sum_accept: float = 0.0
    n_leapfrog: int = 0


@dataclass
class ChainResult:
    """Draws and statistics flushed by one chain.

    ``positions`` holds unconstrained vectors, one row per retained draw.
    """

    chain_id: int
    status: ChainStatus
    positions: ArrayF
    stats: dict[str, np.ndarray]
    warmup_divergences: int = 0
    step_size: float = math.nan
    inv_metric: ArrayF = field(default_factory=lambda: np.array([]))
    message: str = ""

    @property
    def n_retained(self) -> int:
        """Number of valid draws."""
        return int(self.positions.shape[0])

    @property
    def complete(self) -> bool:
        """Whether the chain reached DONE."""
        return self.status is ChainStatus.DONE


class Chain:
    """One Markov chain: warm-up adaptation followed by sampling.

    Parameters
    ----------
    log_density : LogDensityFunc
        Returns log density and gradient at an unconstrained vector.
    init : Callable[[np.random.Generator], ArrayF]
        Produces an initial unconstrained position.
    config : SamplerConfig
        Sampler settings.
    rng : np.random.Generator
        Random stream owned by this chain.
    chain_id : int
        Identifier used in logs and results.
    cancel : threading.Event | None
        When set, the chain stops between iterations.
    """

    #: Attempts at finding an initial point with finite density.
    MAX_INIT_TRIES = 100

    def __init__(  # noqa: PLR0913
        self,
        log_density: LogDensityFunc,
        init: Callable[[np.random.Generator], ArrayF],
        config: SamplerConfig,
        rng: np.random.Generator,
        chain_id: int = 0,
        cancel: threading.Event | None = None,
    ) -> None:
        self.log_density = log_density
        self.init = init
        self.config = config
        self.rng = rng
        self.chain_id = chain_id
        self.cancel = cancel
        self.status = ChainStatus.UNINITIALIZED
        self.step_size = 1.0
        self.metric: Metric | None = None
        self._deadline = math.inf

    # --- initialisation -------------------------------------------------
    def _initial_point(self) -> PhasePoint:
        """Initial position with finite density and gradient.

        Raises
        ------
        NumericError
            If no finite point is found after `MAX_INIT_TRIES` attempts.
        """
        for _ in range(self.MAX_INIT_TRIES):
            q = np.asarray(self.init(self.rng), dtype=np.float64)
            lp, grad = self.log_density(q)
            if math.isfinite(lp) and np.all(np.isfinite(grad)):
                return PhasePoint(q, np.zeros_like(q), lp, grad)
        msg = (
            f"Chain {self.chain_id}: no initial point with finite log density "
            f"after {self.MAX_INIT_TRIES} attempts."
        )
        self.status = ChainStatus.FAILED
        raise NumericError(msg)

    def _init_step_size(self, point: PhasePoint, step_size: float) -> float:
        """Double or halve the step size until one leapfrog step crosses the target.

        Raises
        ------
        NumericError
            If the step size leaves ``[MIN_STEP_SIZE, MAX_STEP_SIZE]``.
        """
        assert self.metric is not None
        log_target = math.log(self.config.target_accept)
        direction = 0
        while True:
            start = PhasePoint(point.q, self.metric.sample_momentum(self.rng), point.lp, point.grad)
            h0 = start.hamiltonian(self.metric)
            h = leapfrog(self.log_density, start, step_size, self.metric).hamiltonian(self.metric)
            delta = h0 - h if math.isfinite(h) else -math.inf
            if direction == 0:
                direction = 1 if delta > log_target else -1
            if direction == 1 and not delta > log_target:
                return step_size
            if direction == -1 and not delta < log_target:
                return step_size
            step_size = step_size * 2.0 if direction == 1 else step_size / 2.0
            if not MIN_STEP_SIZE <= step_size <= MAX_STEP_SIZE:
                msg = f"Chain {self.chain_id}: step size search diverged ({step_size:.3g})."
                raise NumericError(msg)

    # --- transitions ----------------------------------------------------
    def transition(self, current: PhasePoint) -> Transition:
        """Run one trajectory from ``current`` with the configured algorithm."""
        if self.config.algorithm == "hmc":
            return self._hmc_transition(current)
        return self._nuts_transition(current)

    def _hmc_transition(self, current: PhasePoint) -> Transition:
        assert self.metric is not None
        start = PhasePoint(current.q, self.metric.sample_momentum(self.rng), current.lp, current.grad)
        h0 = start.hamiltonian(self.metric)
        point = start
        n_steps = 0
        for _ in range(self.config.num_leapfrog):
            point = leapfrog(self.log_density, point, self.step_size, self.metric)
            n_steps += 1
            if not math.isfinite(point.lp):
                break
        h = point.hamiltonian(self.metric)
        delta = h - h0
        diverging = not delta <= self.config.max_delta_h
        accept_prob = 0.0 if diverging else math.exp(min(0.0, -delta))
        if self.rng.uniform() < accept_prob:
            return Transition(point, accept_prob, 0, n_steps, diverging, h)
        return Transition(start, accept_prob, 0, n_steps, diverging, h0)

    def _is_turning(self, rho: ArrayF, p_left: ArrayF, p_right: ArrayF) -> bool:
        assert self.metric is not None
        return not (
            self.metric.velocity(p_left) @ rho > 0 and self.metric.velocity(p_right) @ rho > 0
        )

    def _merge_turning(self, first: _Tree, second: _Tree, rho: ArrayF) -> bool:
        """No-U-turn check of two adjacent segments (``first`` earlier in time).

        Besides the merged span, the criterion is also checked across the
        seam of the two segments.
        """
        return (
            self._is_turning(rho, first.left.p, second.right.p)
            or self._is_turning(first.rho + second.left.p, first.left.p, second.left.p)
            or self._is_turning(first.right.p + second.rho, first.right.p, second.right.p)
        )

    def _leaf(self, start: PhasePoint, direction: int, h0: float) -> _Tree:
        assert self.metric is not None
        point = leapfrog(self.log_density, start, direction * self.step_size, self.metric)
        delta = point.hamiltonian(self.metric) - h0
        diverging = not delta <= self.config.max_delta_h
        accept = 0.0 if not math.isfinite(delta) else math.exp(min(0.0, -delta))
        return _Tree(
            point,
            point,
            point,
            -delta,
            point.p.copy(),
            diverging=diverging,
            sum_accept=accept,
            n_leapfrog=1,
        )

    def _build_tree(self, start: PhasePoint, direction: int, depth: int, h0: float) -> _Tree:
        """Build a balanced segment of ``2**depth`` leapfrog steps."""
        if depth == 0:
            return self._leaf(start, direction, h0)
        inner = self._build_tree(start, direction, depth - 1, h0)
        if inner.diverging or inner.turning:
            return inner
        outer = self._build_tree(
            inner.right if direction > 0 else inner.left, direction, depth - 1, h0
        )
        sum_accept = inner.sum_accept + outer.sum_accept
        n_leapfrog = inner.n_leapfrog + outer.n_leapfrog
        if outer.diverging or outer.turning:
            outer.sum_accept = sum_accept
            outer.n_leapfrog = n_leapfrog
            return outer
        log_weight = float(np.logaddexp(inner.log_weight, outer.log_weight))
        take_outer = self.rng.uniform() < math.exp(outer.log_weight - log_weight)
        proposal = outer.proposal if take_outer else inner.proposal
        first, second = (inner, outer) if direction > 0 else (outer, inner)
        rho = inner.rho + outer.rho
        return _Tree(
            first.left,
            second.right,
            proposal,
            log_weight,
            rho,
            turning=self._merge_turning(first, second, rho),
            sum_accept=sum_accept,
            n_leapfrog=n_leapfrog,
        )

    def _nuts_transition(self, current: PhasePoint) -> Transition:
        assert self.metric is not None
        start = PhasePoint(current.q, self.metric.sample_momentum(self.rng), current.lp, current.grad)
        h0 = start.hamiltonian(self.metric)
        tree = _Tree(start, start, start, 0.0, start.p.copy())
        sample = start
        depth = n_leapfrog = 0
        sum_accept = 0.0
        diverging = False
        while depth < self.config.max_tree_depth:
            direction = 1 if self.rng.uniform() < 0.5 else -1
            edge = tree.right if direction > 0 else tree.left
            sub = self._build_tree(edge, direction, depth, h0)
            depth += 1
            n_leapfrog += sub.n_leapfrog
            sum_accept += sub.sum_accept
            if sub.diverging:
                diverging = True
                break
            if sub.turning:
                break
            # biased progressive sampling favours the new segment
            if self.rng.uniform() < math.exp(min(0.0, sub.log_weight - tree.log_weight)):
                sample = sub.proposal
            first, second = (tree, sub) if direction > 0 else (sub, tree)
            rho = tree.rho + sub.rho
            tree = _Tree(
                first.left,
                second.right,
                sample,
                float(np.logaddexp(tree.log_weight, sub.log_weight)),
                rho,
            )
            if self._merge_turning(first, second, rho):
                break
        return Transition(
            sample,
            sum_accept / max(n_leapfrog, 1),
            depth,
            n_leapfrog,
            diverging,
            sample.hamiltonian(self.metric),
        )

    # --- chain life cycle -----------------------------------------------
    def _should_stop(self) -> str:
        if self.cancel is not None and self.cancel.is_set():
            return "cancelled"
        if time.monotonic() > self._deadline:
            return "wall-clock budget exhausted"
        return ""

    def _result(
        self,
        status: ChainStatus,
        positions: ArrayF,
        stats: dict[str, np.ndarray],
        n: int,
        warmup_divergences: int,
        message: str = "",
    ) -> ChainResult:
        self.status = status
        level = logging.INFO if status is ChainStatus.DONE else logging.WARNING
        logger.log(
            level,
            "Chain %d %s after %d draws%s",
            self.chain_id,
            status,
            n,
            f": {message}" if message else ".",
        )
        return ChainResult(
            self.chain_id,
            status,
            positions[:n].copy(),
            {k: v[:n].copy() for k, v in stats.items()},
            warmup_divergences,
            self.step_size,
            self.metric.inv.copy() if self.metric is not None else np.array([]),
            message,
        )

    def _start_warmup(self, point: PhasePoint) -> tuple[DualAveraging, WindowedAdaptation]:
        cfg = self.config
        dim = point.q.size
        dense = cfg.metric == "dense"
        self.metric = Metric.unit(dim, dense)
        self.step_size = self._init_step_size(point, 1.0)
        dual = DualAveraging(cfg.target_accept, cfg.gamma, cfg.kappa, cfg.t0)
        dual.restart(self.step_size)
        windows = WindowedAdaptation(
            cfg.num_warmup,
            cfg.init_buffer,
            cfg.term_buffer,
            cfg.base_window,
            WelfordEstimator(dim, dense),
        )
        return dual, windows

    def run(self) -> ChainResult:  # noqa: C901
        """Run warm-up and sampling; never raises for statistical trouble.

        Returns
        -------
        ChainResult
            Retained draws (possibly partial) and the final status.

        Raises
        ------
        NumericError
            If no finite initial point can be found.
        """
        cfg = self.config
        if cfg.max_seconds is not None:
            self._deadline = time.monotonic() + cfg.max_seconds
        self.status = ChainStatus.WARMUP
        logger.info("Chain %d: warm-up (%d iterations).", self.chain_id, cfg.num_warmup)
        point = self._initial_point()
        dim = point.q.size
        positions = np.full((cfg.num_samples, dim), np.nan)
        stats = {name: np.full(cfg.num_samples, np.nan) for name in STAT_NAMES}
        stats["diverging"] = np.zeros(cfg.num_samples, dtype=bool)
        try:
            dual, windows = self._start_warmup(point)
        except NumericError as e:
            return self._result(ChainStatus.FAILED, positions, stats, 0, 0, str(e))

        warmup_divergences = consecutive = 0
        retries = cfg.warmup_retries
        it = 0
        while it < cfg.num_warmup:
            if reason := self._should_stop():
                return self._result(ChainStatus.CANCELLED, positions, stats, 0, warmup_divergences, reason)
            t = self.transition(point)
            point = t.point
            if t.diverging:
                warmup_divergences += 1
                consecutive += 1
            else:
                consecutive = 0
            if consecutive >= cfg.max_consecutive_divergences:
                message = (
                    f"{consecutive} consecutive divergent transitions at warm-up "
                    f"iteration {it} (step size {self.step_size:.3g})"
                )
                if retries <= 0:
                    return self._result(
                        ChainStatus.FAILED, positions, stats, 0, warmup_divergences, message
                    )
                retries -= 1
                logger.warning("Chain %d: %s; re-initializing.", self.chain_id, message)
                try:
                    point = self._initial_point()
                    dual, windows = self._start_warmup(point)
                except NumericError as e:
                    return self._result(
                        ChainStatus.FAILED, positions, stats, 0, warmup_divergences, str(e)
                    )
                consecutive = it = 0
                continue
            self.step_size = dual.update(t.accept_stat)
            inv_metric = windows.learn(point.q)
            if inv_metric is not None:
                self.metric = Metric(inv_metric)
                try:
                    self.step_size = self._init_step_size(point, self.step_size)
                except NumericError as e:
                    return self._result(
                        ChainStatus.FAILED, positions, stats, 0, warmup_divergences, str(e)
                    )
                dual.restart(self.step_size)
                logger.debug(
                    "Chain %d: metric updated at iteration %d, step size %.3g.",
                    self.chain_id,
                    it,
                    self.step_size,
                )
            it += 1
        if cfg.num_warmup > 0:
            self.step_size = dual.final_step_size
        if warmup_divergences:
            logger.info(
                "Chain %d: %d divergent warm-up transitions.", self.chain_id, warmup_divergences
            )

        self.status = ChainStatus.SAMPLING
        logger.info(
            "Chain %d: sampling (%d iterations, step size %.3g).",
            self.chain_id,
            cfg.num_samples,
            self.step_size,
        )
        for i in range(cfg.num_samples):
            if reason := self._should_stop():
                return self._result(ChainStatus.CANCELLED, positions, stats, i, warmup_divergences, reason)
            t = self.transition(point)
            point = t.point
            positions[i] = point.q
            stats["lp"][i] = point.lp
            stats["acceptance_rate"][i] = t.accept_stat
            stats["step_size"][i] = self.step_size
            stats["tree_depth"][i] = t.tree_depth
            stats["n_steps"][i] = t.n_leapfrog
            stats["diverging"][i] = t.diverging
            stats["energy"][i] = t.energy
        return self._result(ChainStatus.DONE, positions, stats, cfg.num_samples, warmup_divergences)
