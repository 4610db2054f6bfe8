"""Unnormalized log posterior of a Hill model and its exact gradient.

For an unconstrained vector ``u`` the evaluator

1. maps ``u`` to parameter values, accumulating the log-Jacobian;
2. gathers each observation's compound- or batch-specific values and computes
   the Hill mean response;
3. adds the Normal log-likelihood of the responses and the log-priors;
4. back-propagates hand-derived partial derivatives to ``u``.

Any non-finite result is reported as ``-inf`` with a zero gradient so the
sampler treats the point as outside the typical set.
"""

from __future__ import annotations

import logging
import typing

import numpy as np

from hillbayes.fitting.errors import InvalidDataError
from hillbayes.fitting.models import hill_terms
from hillbayes.fitting.priors import HALF_LOG_2PI
from hillbayes.fitting.transforms import Level, ParameterLayout

if typing.TYPE_CHECKING:
    from hillbayes.fitting.data_structures import Observations
    from hillbayes.fitting.variants import ModelSpec
    from hillbayes.hillbayes_types import ArrayDict, ArrayF, ArrayI

logger = logging.getLogger(__name__)


def gather(values: np.ndarray, index: ArrayI | None) -> np.ndarray:
    """Expand per-entity values to per-observation values.

    ``values`` may carry leading dimensions (e.g. chain and draw): entity
    parameters are indexed along the last axis, shared ones broadcast.
    """
    values = np.asarray(values)
    if index is None:
        return values[..., np.newaxis]
    return values[..., index]


class LogPosterior:
    """Log posterior density of ``model`` given ``obs``.

    Parameters
    ----------
    model : ModelSpec
        Model variant.
    obs : Observations
        Data; shared read-only by all chains.

    Raises
    ------
    InvalidDataError
        If the data carry several compounds but the model has no per-compound
        parameter.
    """

    def __init__(self, model: ModelSpec, obs: Observations) -> None:
        if obs.n_compound > 1 and not model.uses_compound:
            msg = (
                f"Model '{model.name}' fits one compound, data hold {obs.n_compound}; "
                "use a screening variant or select one compound."
            )
            raise InvalidDataError(msg)
        if obs.n_batch > 1 and not model.uses_batch:
            logger.info(
                "Model '%s' pools %d batches into a single noise level.",
                model.name,
                obs.n_batch,
            )
        self.model = model
        self.obs = obs
        self.layout = ParameterLayout(
            model,
            n_compound=obs.n_compound if model.uses_compound else 1,
            n_batch=obs.n_batch if model.uses_batch else 1,
        )
        self._index: dict[str, ArrayI | None] = {
            p.name: obs.index(p.level) if p.level is not Level.SHARED else None
            for p in model
        }
        self._sizes = {name: b.size for name, b in self.layout.blocks.items()}
        self._const = -len(obs) * HALF_LOG_2PI

    @property
    def dim(self) -> int:
        """Dimension of the unconstrained space."""
        return self.layout.dim

    def _scatter(self, name: str, contrib: ArrayF) -> ArrayF:
        """Sum per-observation contributions into the parameter's shape."""
        index = self._index[name]
        if index is None:
            return np.asarray(np.sum(contrib))
        return np.bincount(index, weights=contrib, minlength=self._sizes[name])

    def log_posterior(self, u: ArrayF) -> tuple[float, ArrayF]:
        """Log density (up to a constant) and gradient at unconstrained ``u``.

        Returns
        -------
        tuple[float, ArrayF]
            ``log p(y | theta) + log p(theta) + log|det dtheta/du|`` and its
            gradient with respect to ``u``.
        """
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            params, log_jac = self.layout.to_constrained(u)
            g = {
                name: gather(params[name], self._index[name]).reshape(-1)
                for name in params
            }
            terms = hill_terms(
                self.obs.log_conc, g["log_IC50"], g["nH"], g["top"], g["bottom"]
            )
            sigma = g["sigma"]
            inv_var = 1.0 / sigma**2
            resid = self.obs.response - terms.mu
            sq = resid**2 * inv_var
            log_lik = float(-0.5 * np.sum(sq) - np.sum(np.broadcast_to(np.log(sigma), resid.shape)))
            log_lik += self._const
            d_mu = resid * inv_var
            d_sigma = (sq - 1.0) / sigma
            grads = {
                "top": self._scatter("top", d_mu * terms.d_top),
                "bottom": self._scatter("bottom", d_mu * terms.d_bottom),
                "log_IC50": self._scatter("log_IC50", d_mu * terms.d_log_ic50),
                "nH": self._scatter("nH", d_mu * terms.d_nh),
                "sigma": self._scatter("sigma", np.broadcast_to(d_sigma, resid.shape)),
            }
            log_prior = 0.0
            for p in self.model:
                lp, gp = p.prior.logpdf_and_grad(params[p.name])
                log_prior += lp
                grads[p.name] = grads[p.name] + gp
            total = log_lik + log_prior + log_jac
            grad = self.layout.grad_to_unconstrained(params, grads)
        if not np.isfinite(total) or not np.all(np.isfinite(grad)):
            return -np.inf, np.zeros(self.dim)
        return total, grad

    __call__ = log_posterior

    def log_density(self, u: ArrayF) -> float:
        """Log density only."""
        return self.log_posterior(u)[0]
