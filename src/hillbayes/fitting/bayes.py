"""Bayesian fitting of Hill models: multi-chain sampling and diagnostics.

Functions
---------
- initializer: factory of initial unconstrained positions for a chain.
- sample_posterior: run independent chains on a thread pool and assemble the
  posterior draw set.
- diagnostics: R-hat, bulk/tail ESS and divergence counts with flags.
- fit_hill: `sample_posterior` followed by `diagnostics`.
"""

from __future__ import annotations

import logging
import threading
import typing
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from hillbayes.fitting.data_structures import (
    STAT_NAMES,
    ChainStatus,
    PosteriorDraws,
    SamplerConfig,
)
from hillbayes.fitting.errors import DivergenceWarning, DomainError, NumericError
from hillbayes.fitting.nuts import Chain
from hillbayes.fitting.posterior import LogPosterior

if typing.TYPE_CHECKING:
    from collections.abc import Callable

    from hillbayes.fitting.data_structures import Observations
    from hillbayes.fitting.nuts import ChainResult
    from hillbayes.fitting.transforms import ParameterLayout
    from hillbayes.fitting.variants import ModelSpec
    from hillbayes.hillbayes_types import ArrayF

logger = logging.getLogger(__name__)

#: Prior draws attempted before giving up on prior initialisation.
MAX_PRIOR_TRIES = 100


def initializer(
    layout: ParameterLayout, config: SamplerConfig
) -> Callable[[np.random.Generator], ArrayF]:
    """Return a factory of initial unconstrained positions.

    User-supplied values outside their support are rejected with a WARNING and
    replaced by draws from the prior.

    Parameters
    ----------
    layout : ParameterLayout
        Layout of the unconstrained vector.
    config : SamplerConfig
        Its ``init`` and ``init_radius`` select the strategy.

    Returns
    -------
    Callable[[np.random.Generator], ArrayF]
        Function drawing one initial position from a chain's generator.
    """

    def from_prior(rng: np.random.Generator) -> ArrayF:
        for _ in range(MAX_PRIOR_TRIES):
            try:
                u, _ = layout.to_unconstrained(layout.sample_prior(rng))
            except DomainError:
                continue
            return u
        msg = f"No valid prior draw in {MAX_PRIOR_TRIES} attempts."
        raise NumericError(msg)

    def uniform(rng: np.random.Generator) -> ArrayF:
        r = config.init_radius
        return rng.uniform(-r, r, layout.dim)

    if isinstance(config.init, str):
        return from_prior if config.init == "prior" else uniform
    try:
        u0, _ = layout.to_unconstrained(config.init)
    except (DomainError, KeyError) as e:
        logger.warning("Initial values rejected (%s); initializing from the prior.", e)
        return from_prior
    return lambda _rng: u0.copy()


def _assemble(
    results: list[ChainResult], target: LogPosterior, config: SamplerConfig
) -> PosteriorDraws:
    """Merge chain results into disjoint slots of one draw set."""
    layout = target.layout
    n_chain, n_draw = len(results), config.num_samples
    params = {
        name: np.full((n_chain, n_draw, *b.shape), np.nan)
        for name, b in layout.blocks.items()
    }
    stats = {name: np.full((n_chain, n_draw), np.nan) for name in STAT_NAMES}
    stats["diverging"] = np.zeros((n_chain, n_draw), dtype=bool)
    for i, res in enumerate(results):
        for j, u in enumerate(res.positions):
            values, _ = layout.to_constrained(u)
            for name, v in values.items():
                params[name][i, j] = v
        for name, v in res.stats.items():
            stats[name][i, : res.n_retained] = v
    obs = target.obs
    return PosteriorDraws(
        model=target.model,
        params=params,
        stats=stats,
        chain_ids=tuple(r.chain_id for r in results),
        statuses=tuple(r.status for r in results),
        n_retained=tuple(r.n_retained for r in results),
        warmup_divergences=tuple(r.warmup_divergences for r in results),
        compound_labels=_labels(obs.compound_labels, layout.n_compound),
        batch_labels=_labels(obs.batch_labels, layout.n_batch),
    )


def _labels(labels: tuple[str, ...], count: int) -> tuple[str, ...]:
    if len(labels) == count:
        return labels
    return tuple(str(i + 1) for i in range(count))


def sample_posterior(
    model: ModelSpec,
    obs: Observations,
    config: SamplerConfig | None = None,
    cancel: threading.Event | None = None,
) -> PosteriorDraws:
    """Sample the posterior of ``model`` given ``obs`` with independent chains.

    Chains run on a thread pool; each owns a random stream spawned from
    ``config.seed`` and writes to its own slot of the draw set. Failed or
    cancelled chains are reported through their status, not raised.

    Parameters
    ----------
    model : ModelSpec
        Model variant.
    obs : Observations
        Data, shared read-only by all chains.
    config : SamplerConfig | None
        Sampler settings; defaults to `SamplerConfig()`.
    cancel : threading.Event | None
        Setting it stops every chain at its next iteration; it is also set
        here when one chain raises, to stop the others.

    Returns
    -------
    PosteriorDraws
        Draws of all chains, padded with NaN past each chain's retained draws.

    Raises
    ------
    InvalidDataError
        If the data cannot be fitted by ``model``.
    NumericError
        If a chain finds no initial point with finite density.
    """
    config = config or SamplerConfig()
    target = LogPosterior(model, obs)
    init = initializer(target.layout, config)
    stop = cancel if cancel is not None else threading.Event()
    seeds = np.random.SeedSequence(config.seed).spawn(config.chains)
    chains = [
        Chain(target, init, config, np.random.default_rng(s), chain_id=i, cancel=stop)
        for i, s in enumerate(seeds)
    ]
    logger.info(
        "Sampling %s (%d parameters, %d observations): %d chains x (%d + %d) iterations.",
        model.name,
        target.dim,
        len(obs),
        config.chains,
        config.num_warmup,
        config.num_samples,
    )
    with ThreadPoolExecutor(max_workers=config.cores or config.chains) as pool:
        futures = {pool.submit(chain.run): slot for slot, chain in enumerate(chains)}
        slots: list[ChainResult | None] = [None] * len(chains)
        try:
            for future in as_completed(futures):
                slots[futures[future]] = future.result()
        except Exception:
            stop.set()
            raise
    results = [res for res in slots if res is not None]
    draws = _assemble(results, target, config)
    for res in results:
        if res.status is ChainStatus.FAILED:
            logger.error("Chain %d failed: %s", res.chain_id, res.message)
        n_div = int(np.sum(res.stats.get("diverging", 0)))
        if n_div:
            warnings.warn(
                f"Chain {res.chain_id}: {n_div} divergent transitions after warm-up.",
                DivergenceWarning,
                stacklevel=2,
            )
    return draws


@dataclass(frozen=True)
class Diagnostics:
    """Convergence diagnostics of a draw set.

    Attributes
    ----------
    table : pd.DataFrame
        One row per scalar parameter: ``r_hat``, ``ess_bulk``, ``ess_tail`` and
        the boolean flags ``rhat_flag`` and ``ess_flag``.
    divergences : dict[int, int]
        Divergent retained transitions per chain.
    warmup_divergences : dict[int, int]
        Divergent warm-up transitions per chain.
    statuses : dict[int, ChainStatus]
        Final status per chain.
    n_draws : int
        Draws entering the statistics.
    """

    table: pd.DataFrame
    divergences: dict[int, int]
    warmup_divergences: dict[int, int]
    statuses: dict[int, ChainStatus]
    n_draws: int
    thresholds: dict[str, float] = field(default_factory=dict)

    @property
    def flagged(self) -> list[str]:
        """Parameters failing the R-hat or ESS check."""
        mask = self.table["rhat_flag"] | self.table["ess_flag"]
        return [str(i) for i in self.table.index[mask]]

    @property
    def n_divergent(self) -> int:
        """Total divergent retained transitions."""
        return sum(self.divergences.values())

    @property
    def ok(self) -> bool:
        """No flag, no divergence and every chain done."""
        return (
            not self.flagged
            and self.n_divergent == 0
            and all(s is ChainStatus.DONE for s in self.statuses.values())
        )

    def chain_frame(self) -> pd.DataFrame:
        """Per-chain status and divergence counts."""
        return pd.DataFrame(
            {
                "status": [str(s) for s in self.statuses.values()],
                "divergences": list(self.divergences.values()),
                "warmup_divergences": list(self.warmup_divergences.values()),
            },
            index=pd.Index(list(self.statuses), name="chain"),
        )


def diagnostics(
    draws: PosteriorDraws, rhat_threshold: float = 1.01, min_ess_ratio: float = 0.1
) -> Diagnostics:
    """Compute convergence diagnostics over the usable chains.

    R-hat above ``rhat_threshold`` and bulk ESS below ``min_ess_ratio`` times
    the number of draws are flagged. Statistics that cannot be computed (NaN,
    e.g. for constant draws) do not raise the R-hat flag.

    Parameters
    ----------
    draws : PosteriorDraws
        Sampler output.
    rhat_threshold : float
        Largest acceptable R-hat.
    min_ess_ratio : float
        Smallest acceptable ratio of bulk ESS to total draws.

    Returns
    -------
    Diagnostics
        Per-parameter statistics and flags; nothing is raised for poor
        convergence.
    """
    chains = draws.usable_chains()
    if chains:
        n_draws = len(chains) * min(draws.n_retained[i] for i in chains)
        table = draws.summary(kind="diagnostics", round_to="none")
        table = table[["r_hat", "ess_bulk", "ess_tail"]].copy()
    else:
        logger.error("No chain produced any draw.")
        n_draws = 0
        table = pd.DataFrame(columns=["r_hat", "ess_bulk", "ess_tail"], dtype=float)
    table["rhat_flag"] = table["r_hat"].fillna(0.0) > rhat_threshold
    table["ess_flag"] = table["ess_bulk"].fillna(0.0) < min_ess_ratio * n_draws
    diag = Diagnostics(
        table=table,
        divergences=draws.divergences,
        warmup_divergences=dict(zip(draws.chain_ids, draws.warmup_divergences, strict=True)),
        statuses=dict(zip(draws.chain_ids, draws.statuses, strict=True)),
        n_draws=n_draws,
        thresholds={"r_hat": rhat_threshold, "ess_ratio": min_ess_ratio},
    )
    if diag.flagged:
        logger.warning("Convergence flags raised for: %s", ", ".join(diag.flagged))
    return diag


@dataclass
class HillFit:
    """Result container of a Bayesian Hill fit.

    Attributes
    ----------
    draws : PosteriorDraws
        Posterior draw set.
    diagnostics : Diagnostics
        Convergence diagnostics of ``draws``.
    observations : Observations
        Data the model was fitted to.
    """

    draws: PosteriorDraws
    diagnostics: Diagnostics
    observations: Observations

    def pprint(self) -> str:
        """Brief summary: shared parameters and convergence state."""
        lines = [
            f"{self.draws.model.name}: {self.draws.n_chains} chains, "
            f"{self.diagnostics.n_draws} draws"
        ]
        if self.diagnostics.n_draws == 0:
            statuses = ", ".join(str(s) for s in self.diagnostics.statuses.values())
            return f"{lines[0]} ({statuses})"
        for p in self.draws.model:
            values = self.draws.flat(p.name)
            if values.ndim == 1:
                lines.append(f"  {p.name} = {np.mean(values):.4g} +/- {np.std(values):.2g}")
            else:
                lines.append(f"  {p.name}: {values.shape[1]} values")
        if self.diagnostics.ok:
            lines.append("  converged")
        else:
            lines.append(
                f"  check: {self.diagnostics.n_divergent} divergences, "
                f"flagged {self.diagnostics.flagged}"
            )
        return "\n".join(lines)

    def is_valid(self) -> bool:
        """Whether every chain completed without divergence or flag."""
        return self.diagnostics.ok


def fit_hill(
    model: ModelSpec,
    obs: Observations,
    config: SamplerConfig | None = None,
    cancel: threading.Event | None = None,
    rhat_threshold: float = 1.01,
    min_ess_ratio: float = 0.1,
) -> HillFit:
    """Sample ``model`` on ``obs`` and compute diagnostics.

    Returns
    -------
    HillFit
        Draws, diagnostics and data.
    """
    draws = sample_posterior(model, obs, config, cancel)
    return HillFit(draws, diagnostics(draws, rhat_threshold, min_ess_ratio), obs)
