"""Generated quantities computed from posterior draws.

Every function here reads a `PosteriorDraws` without modifying it, so they can
be called after sampling any number of times and in any order. Stochastic
quantities take an explicit ``numpy.random.Generator``.

Arrays keep the ``(chain, draw)`` leading axes of the usable chains.
"""

from __future__ import annotations

import logging
import typing

import arviz as az
import numpy as np
from scipy import stats

from hillbayes.fitting.errors import EntityIndexError, InvalidDataError
from hillbayes.fitting.models import hill
from hillbayes.fitting.posterior import gather
from hillbayes.fitting.transforms import Level

if typing.TYPE_CHECKING:
    from hillbayes.fitting.data_structures import Observations, PosteriorDraws
    from hillbayes.hillbayes_types import ArrayF

logger = logging.getLogger(__name__)

OBS_DIM = "obs_id"


def _entity_values(draws: PosteriorDraws, name: str, entity: int | None) -> np.ndarray:
    """Draws of ``name`` shaped ``(chain, draw, curve, 1)`` for grid evaluation.

    ``entity`` is a 1-based compound or batch id, as in `Observations`.
    """
    posterior, _ = draws.posterior_dict()
    values = posterior[name]
    if draws.model[name].level is Level.SHARED:
        return values[..., np.newaxis, np.newaxis]
    if entity is not None:
        if not 1 <= entity <= values.shape[-1]:
            msg = f"No entity {entity} for '{name}' ({values.shape[-1]} available)."
            raise EntityIndexError(msg)
        values = values[..., [entity - 1]]
    return values[..., np.newaxis]


def expected_response(
    draws: PosteriorDraws, log_conc_grid: ArrayF, compound: int | None = None
) -> ArrayF:
    """Posterior expected response on a concentration grid.

    Parameters
    ----------
    draws : PosteriorDraws
        Posterior draws.
    log_conc_grid : ArrayF
        log10 concentrations to evaluate.
    compound : int | None
        1-based compound id, as in `Observations`; all compounds when None.

    Returns
    -------
    ArrayF
        Shape ``(chain, draw, n_curve, n_grid)``, with ``n_curve`` the number of
        compounds (1 for shared-only models or when ``compound`` is given).
    """
    x = np.asarray(log_conc_grid, dtype=np.float64)
    p = {n: _entity_values(draws, n, compound) for n in ("log_IC50", "nH", "top", "bottom")}
    return np.asarray(hill(x, p["log_IC50"], p["nH"], p["top"], p["bottom"]))


def sample_response(
    draws: PosteriorDraws,
    log_conc_grid: ArrayF,
    rng: np.random.Generator,
    compound: int | None = None,
    batch: int = 1,
) -> ArrayF:
    """One simulated response per draw and grid point, ``Normal(mu, sigma)``.

    ``compound`` and ``batch`` are 1-based ids, as in `Observations`;
    ``batch`` selects the noise level of batch-level models.
    """
    mu = expected_response(draws, log_conc_grid, compound)
    sigma = _entity_values(draws, "sigma", batch)
    return rng.normal(mu, sigma)


def _check_entities(draws: PosteriorDraws, obs: Observations) -> None:
    if draws.model.uses_compound and obs.n_compound != len(draws.compound_labels):
        msg = (
            f"Observations hold {obs.n_compound} compounds, draws "
            f"{len(draws.compound_labels)}."
        )
        raise InvalidDataError(msg)
    if draws.model.uses_batch and obs.n_batch != len(draws.batch_labels):
        msg = f"Observations hold {obs.n_batch} batches, draws {len(draws.batch_labels)}."
        raise InvalidDataError(msg)


def _per_observation(draws: PosteriorDraws, obs: Observations) -> dict[str, np.ndarray]:
    """Each parameter gathered per observation: ``(chain, draw, n_obs)``."""
    _check_entities(draws, obs)
    posterior, _ = draws.posterior_dict()
    return {
        p.name: gather(posterior[p.name], obs.index(p.level)) for p in draws.model
    }


def expected_observations(draws: PosteriorDraws, obs: Observations) -> ArrayF:
    """Expected response at each observation, ``(chain, draw, n_obs)``."""
    g = _per_observation(draws, obs)
    mu = hill(obs.log_conc, g["log_IC50"], g["nH"], g["top"], g["bottom"])
    return np.broadcast_to(mu, (*g["top"].shape[:2], len(obs))).copy()


def posterior_predictive(
    draws: PosteriorDraws, obs: Observations, rng: np.random.Generator
) -> ArrayF:
    """Replicate observations drawn from ``Normal(mu, sigma)``, ``(chain, draw, n_obs)``."""
    mu = expected_observations(draws, obs)
    sigma = _per_observation(draws, obs)["sigma"]
    return rng.normal(mu, np.broadcast_to(sigma, mu.shape))


def pointwise_log_likelihood(draws: PosteriorDraws, obs: Observations) -> ArrayF:
    """Normal log-likelihood of each observation, ``(chain, draw, n_obs)``."""
    mu = expected_observations(draws, obs)
    sigma = _per_observation(draws, obs)["sigma"]
    return stats.norm.logpdf(obs.response, loc=mu, scale=sigma)


def to_inference_data(
    draws: PosteriorDraws,
    obs: Observations,
    log_likelihood: bool = True,
    rng: np.random.Generator | None = None,
) -> az.InferenceData:
    """ArviZ `InferenceData` including data-dependent groups.

    Parameters
    ----------
    draws : PosteriorDraws
        Posterior draws.
    obs : Observations
        Data the draws were fitted to.
    log_likelihood : bool
        Add the pointwise ``log_likelihood`` group (needed by LOO).
    rng : np.random.Generator | None
        When given, add a ``posterior_predictive`` group.

    Returns
    -------
    az.InferenceData
        Groups ``posterior``, ``sample_stats``, ``observed_data``,
        ``constant_data`` and the optional ones.
    """
    posterior, sample_stats = draws.posterior_dict()
    coords = {**draws.coords(), OBS_DIM: list(range(len(obs)))}
    dims = {**draws.dims(), "y": [OBS_DIM], "log_conc": [OBS_DIM]}
    return az.from_dict(
        posterior=posterior,
        sample_stats=sample_stats,
        log_likelihood={"y": pointwise_log_likelihood(draws, obs)}
        if log_likelihood
        else None,
        posterior_predictive={"y": posterior_predictive(draws, obs, rng)}
        if rng is not None
        else None,
        observed_data={"y": np.asarray(obs.response)},
        constant_data={"log_conc": np.asarray(obs.log_conc)},
        coords=coords,
        dims=dims,
    )


def loo(draws: PosteriorDraws, obs: Observations, pointwise: bool = False) -> az.ELPDData:
    """Pareto-smoothed importance-sampling leave-one-out cross-validation.

    Returns
    -------
    az.ELPDData
        ArviZ LOO result (``elpd_loo``, ``p_loo``, Pareto k diagnostics).
    """
    idata = to_inference_data(draws, obs, log_likelihood=True)
    result = az.loo(idata, pointwise=pointwise)
    logger.info("LOO elpd = %.2f (se %.2f)", result["elpd_loo"], result["se"])
    return result
