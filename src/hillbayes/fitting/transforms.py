"""Transform layer between the sampler's unconstrained space and parameters.

Each parameter block is mapped with a monotone bijection:

- real: identity;
- positive (``x > 0``): ``x = exp(u)``, log-Jacobian ``u``;
- below top (``bottom < top``): ``bottom = top - exp(u)``, log-Jacobian ``u``.

`ParameterLayout.to_constrained` returns ``log|det dp/du|`` and
`ParameterLayout.to_unconstrained` returns ``log|det du/dp|``; they are
mutually inverse. The module also hosts truncated normal generators used when
drawing initial values from the priors.
"""

from __future__ import annotations

import typing
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

import numpy as np
from scipy import special

from hillbayes.fitting.errors import DomainError

if typing.TYPE_CHECKING:
    from hillbayes.fitting.variants import ModelSpec, ParamSpec
    from hillbayes.hillbayes_types import ArrayDict, ArrayF

# Smallest / largest probabilities handed to the normal quantile function.
_P_MIN = float(np.finfo(np.float64).tiny)
_P_MAX = float(np.nextafter(1.0, 0.0))


class Level(StrEnum):
    """Which entity a parameter is indexed by."""

    SHARED = "shared"
    COMPOUND = "compound"
    BATCH = "batch"


class Constraint(StrEnum):
    """Support of a parameter."""

    REAL = "real"
    POSITIVE = "positive"
    #: strictly below the shared ``top``
    BELOW_TOP = "below_top"


def normal_lower_rng(
    rng: np.random.Generator,
    mu: float | ArrayF,
    sigma: float | ArrayF,
    lower: float | ArrayF,
    size: int | tuple[int, ...] | None = None,
) -> ArrayF:
    """Draw from ``Normal(mu, sigma)`` truncated below at ``lower``.

    Inverse-CDF sampling through the upper tail, ``x = mu - sigma * Phi^-1(v)``
    with ``v ~ Uniform(0, Phi(-(lower - mu) / sigma))``, so bounds many
    standard deviations above the mean still yield finite draws.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> bool(np.all(normal_lower_rng(rng, 0.0, 1.0, 30.0, size=5) >= 30.0))
    True
    """
    mu_a = np.asarray(mu, dtype=np.float64)
    sigma_a = np.asarray(sigma, dtype=np.float64)
    lower_a = np.asarray(lower, dtype=np.float64)
    tail = special.ndtr(-(lower_a - mu_a) / sigma_a)
    v = rng.uniform(0.0, 1.0, size) * tail
    v = np.clip(v, _P_MIN, _P_MAX)
    return np.maximum(mu_a - sigma_a * special.ndtri(v), lower_a)


def normal_upper_rng(
    rng: np.random.Generator,
    mu: float | ArrayF,
    sigma: float | ArrayF,
    upper: float | ArrayF,
    size: int | tuple[int, ...] | None = None,
) -> ArrayF:
    """Draw from ``Normal(mu, sigma)`` truncated above at ``upper``."""
    return -normal_lower_rng(
        rng, -np.asarray(mu, dtype=np.float64), sigma, -np.asarray(upper), size
    )


@dataclass(frozen=True)
class Block:
    """Position of one parameter inside the flat vectors."""

    spec: ParamSpec
    start: int
    shape: tuple[int, ...]

    @property
    def size(self) -> int:
        """Number of scalar elements."""
        return int(np.prod(self.shape, dtype=int))

    @property
    def span(self) -> slice:
        """Slice into the flat vectors."""
        return slice(self.start, self.start + self.size)


class ParameterLayout:
    """Flat-vector layout of a `ModelSpec` for given entity counts.

    Parameters
    ----------
    model : ModelSpec
        Model whose parameters are laid out.
    n_compound : int
        Number of compounds (size of per-compound blocks).
    n_batch : int
        Number of batches (size of per-batch blocks).
    """

    def __init__(self, model: ModelSpec, n_compound: int = 1, n_batch: int = 1) -> None:
        self.model = model
        self.n_compound = n_compound
        self.n_batch = n_batch
        sizes = {Level.SHARED: (), Level.COMPOUND: (n_compound,), Level.BATCH: (n_batch,)}
        self.blocks: dict[str, Block] = {}
        start = 0
        for p in model:
            block = Block(p, start, sizes[p.level])
            self.blocks[p.name] = block
            start += block.size
        self.dim = start

    def __repr__(self) -> str:
        """Compact summary."""
        return (
            f"ParameterLayout({self.model.name}, dim={self.dim}, "
            f"n_compound={self.n_compound}, n_batch={self.n_batch})"
        )

    def to_constrained(self, u: ArrayF) -> tuple[ArrayDict, float]:
        """Map an unconstrained vector to parameter values.

        Returns
        -------
        tuple[ArrayDict, float]
            Parameter values keyed by name, and ``log|det dp/du|``.
        """
        u = np.asarray(u, dtype=np.float64)
        params: ArrayDict = {}
        log_jac = 0.0
        for name, block in self.blocks.items():
            ub = u[block.span].reshape(block.shape)
            match block.spec.constraint:
                case Constraint.REAL:
                    params[name] = ub.copy()
                case Constraint.POSITIVE:
                    with np.errstate(over="ignore"):
                        params[name] = np.exp(ub)
                    log_jac += float(np.sum(ub))
                case Constraint.BELOW_TOP:
                    top = params["top"]
                    with np.errstate(over="ignore"):
                        bottom = top - np.exp(ub)
                    # keep the ordering strict once the gap drops below float resolution
                    params[name] = np.minimum(bottom, np.nextafter(top, -np.inf))
                    log_jac += float(np.sum(ub))
        return params, log_jac

    def to_unconstrained(self, params: Mapping[str, float | ArrayF]) -> tuple[ArrayF, float]:
        """Map parameter values to the unconstrained vector.

        Scalars are broadcast to per-entity blocks.

        Returns
        -------
        tuple[ArrayF, float]
            Unconstrained vector and ``log|det du/dp|``.

        Raises
        ------
        DomainError
            If a value lies outside its support (e.g. ``bottom >= top``).
        KeyError
            If a parameter is missing.
        """
        u = np.empty(self.dim)
        log_jac = 0.0
        values: ArrayDict = {}
        for name, block in self.blocks.items():
            try:
                x = np.broadcast_to(
                    np.asarray(params[name], dtype=np.float64), block.shape
                ).copy()
            except ValueError as e:
                msg = f"Parameter '{name}' must broadcast to shape {block.shape}."
                raise DomainError(msg) from e
            if not np.all(np.isfinite(x)):
                msg = f"Parameter '{name}' must be finite, got {x}."
                raise DomainError(msg)
            values[name] = x
            match block.spec.constraint:
                case Constraint.REAL:
                    ub = x
                case Constraint.POSITIVE:
                    if np.any(x <= 0):
                        msg = f"Parameter '{name}' must be positive, got {x}."
                        raise DomainError(msg)
                    ub = np.log(x)
                    log_jac -= float(np.sum(ub))
                case Constraint.BELOW_TOP:
                    gap = values["top"] - x
                    if np.any(gap <= 0):
                        msg = f"Parameter '{name}' must lie strictly below top={values['top']}, got {x}."
                        raise DomainError(msg)
                    ub = np.log(gap)
                    log_jac -= float(np.sum(ub))
            u[block.span] = np.ravel(ub)
        return u, log_jac

    def grad_to_unconstrained(self, params: ArrayDict, grads: ArrayDict) -> ArrayF:
        """Chain-rule a gradient from parameter space to unconstrained space.

        ``grads`` holds the derivative of the log density (without the
        Jacobian) with respect to each parameter; the derivative of the
        log-Jacobian term is added here.
        """
        g = np.empty(self.dim)
        top_block = self.blocks["top"]
        top_extra = 0.0
        for name, block in self.blocks.items():
            gx = np.asarray(grads[name], dtype=np.float64)
            match block.spec.constraint:
                case Constraint.REAL:
                    gu = gx
                case Constraint.POSITIVE:
                    gu = gx * params[name] + 1.0
                case Constraint.BELOW_TOP:
                    gu = -gx * (params["top"] - params[name]) + 1.0
                    top_extra += float(np.sum(gx))
            g[block.span] = np.ravel(gu)
        g[top_block.span] += top_extra
        return g

    def flatten(self, params: Mapping[str, float | ArrayF]) -> ArrayF:
        """Concatenate parameter values (constrained) in layout order."""
        return np.concatenate(
            [
                np.ravel(np.broadcast_to(np.asarray(params[name], float), b.shape))
                for name, b in self.blocks.items()
            ]
        )

    def unflatten(self, flat: ArrayF) -> ArrayDict:
        """Split a constrained flat vector (or a stack of them) into parameters.

        Leading dimensions of ``flat`` are preserved, e.g. ``(chain, draw, dim)``
        becomes ``(chain, draw, *shape)`` per parameter.
        """
        flat = np.asarray(flat, dtype=np.float64)
        lead = flat.shape[:-1]
        return {
            name: flat[..., b.span].reshape((*lead, *b.shape))
            for name, b in self.blocks.items()
        }

    def sample_prior(self, rng: np.random.Generator) -> ArrayDict:
        """Draw one parameter set from the priors, respecting every support."""
        params: ArrayDict = {}
        for name, block in self.blocks.items():
            prior = block.spec.prior
            size = block.shape or None
            match block.spec.constraint:
                case Constraint.REAL:
                    x = prior.sample(rng, size)
                case Constraint.POSITIVE:
                    x = prior.sample(rng, size, lower=0.0)
                case Constraint.BELOW_TOP:
                    x = prior.sample(rng, size, upper=params["top"])
            params[name] = np.asarray(x, dtype=np.float64).reshape(block.shape)
        return params
