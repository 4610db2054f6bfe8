"""Prior families with closed-form log densities and gradients.

Densities are fully normalized so they agree with `scipy.stats`; the gradient
is with respect to the (constrained) parameter value.
"""

from __future__ import annotations

import typing
from dataclasses import dataclass
from enum import StrEnum

import numpy as np

from hillbayes.fitting.transforms import normal_lower_rng, normal_upper_rng

if typing.TYPE_CHECKING:
    from hillbayes.hillbayes_types import ArrayF

HALF_LOG_2PI = 0.5 * float(np.log(2.0 * np.pi))


class Family(StrEnum):
    """Supported prior families."""

    NORMAL = "normal"
    LOGNORMAL = "lognormal"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class Prior:
    """A univariate prior, applied i.i.d. to every element of a parameter.

    Attributes
    ----------
    family : Family
        Distribution family.
    loc : float
        Mean (Normal) or log-scale mean (LogNormal). Unused for Exponential.
    scale : float
        Standard deviation (Normal), log-scale sd (LogNormal) or rate
        (Exponential).
    """

    family: Family
    loc: float = 0.0
    scale: float = 1.0

    def __post_init__(self) -> None:
        """Validate the hyperparameters."""
        if not np.isfinite(self.loc) or not self.scale > 0:
            msg = f"Invalid {self.family} hyperparameters: loc={self.loc}, scale={self.scale}."
            raise ValueError(msg)

    def __str__(self) -> str:
        """Stan-like notation, e.g. ``Normal(1, 0.01)``."""
        if self.family is Family.EXPONENTIAL:
            return f"Exponential({self.scale:g})"
        name = "Normal" if self.family is Family.NORMAL else "LogNormal"
        return f"{name}({self.loc:g}, {self.scale:g})"

    def logpdf(self, x: float | ArrayF) -> ArrayF:
        """Elementwise log density."""
        x = np.asarray(x, dtype=np.float64)
        with np.errstate(divide="ignore", invalid="ignore"):
            if self.family is Family.NORMAL:
                z = (x - self.loc) / self.scale
                return -0.5 * z**2 - np.log(self.scale) - HALF_LOG_2PI
            if self.family is Family.LOGNORMAL:
                log_x = np.log(x)
                z = (log_x - self.loc) / self.scale
                lp = -0.5 * z**2 - log_x - np.log(self.scale) - HALF_LOG_2PI
                return np.where(x > 0, lp, -np.inf)
            lp = np.log(self.scale) - self.scale * x
            return np.where(x >= 0, lp, -np.inf)

    def grad(self, x: float | ArrayF) -> ArrayF:
        """Elementwise derivative of the log density."""
        x = np.asarray(x, dtype=np.float64)
        if self.family is Family.NORMAL:
            return -(x - self.loc) / self.scale**2
        if self.family is Family.LOGNORMAL:
            with np.errstate(divide="ignore", invalid="ignore"):
                return -(1.0 + (np.log(x) - self.loc) / self.scale**2) / x
        return np.full_like(x, -self.scale)

    def logpdf_and_grad(self, x: float | ArrayF) -> tuple[float, ArrayF]:
        """Summed log density and elementwise gradient."""
        return float(np.sum(self.logpdf(x))), self.grad(x)

    def sample(
        self,
        rng: np.random.Generator,
        size: int | tuple[int, ...] | None = None,
        lower: float | ArrayF | None = None,
        upper: float | ArrayF | None = None,
    ) -> ArrayF:
        """Draw from the prior, optionally truncated.

        Truncation is only meaningful for the Normal family; LogNormal and
        Exponential draws are already positive and accept ``lower=0``.

        Raises
        ------
        NotImplementedError
            If an upper bound (or a positive lower bound) is requested for a
            non-Normal family.
        """
        if self.family is Family.NORMAL:
            if lower is not None and upper is not None:
                msg = "Two-sided truncation is not supported."
                raise NotImplementedError(msg)
            if lower is not None:
                return normal_lower_rng(rng, self.loc, self.scale, lower, size)
            if upper is not None:
                return normal_upper_rng(rng, self.loc, self.scale, upper, size)
            return np.asarray(rng.normal(self.loc, self.scale, size), dtype=np.float64)
        if upper is not None or (lower is not None and np.any(np.asarray(lower) > 0)):
            msg = f"Truncated {self.family} draws are not supported."
            raise NotImplementedError(msg)
        if self.family is Family.LOGNORMAL:
            return np.asarray(rng.lognormal(self.loc, self.scale, size), dtype=np.float64)
        return np.asarray(rng.exponential(1.0 / self.scale, size), dtype=np.float64)


def normal(mu: float, sigma: float) -> Prior:
    """``Normal(mu, sigma)`` prior."""
    return Prior(Family.NORMAL, mu, sigma)


def lognormal(mu: float, sigma: float) -> Prior:
    """``LogNormal(mu, sigma)`` prior."""
    return Prior(Family.LOGNORMAL, mu, sigma)


def exponential(rate: float) -> Prior:
    """``Exponential(rate)`` prior."""
    return Prior(Family.EXPONENTIAL, 0.0, rate)
