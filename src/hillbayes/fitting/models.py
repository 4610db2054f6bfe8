r"""Hill dose-response model.

The four-parameter Hill (log-logistic) equation relates the measured assay
response to the ligand concentration:

.. math::

    \mu(x) = T + \frac{B - T}{1 + 10^{(\log IC_{50} - x)\, n_H}}

where:
- x is the log10 ligand concentration
- T (`top`) is the response without ligand
- B (`bottom`) is the response at saturating ligand
- log IC50 is the log10 concentration of half-maximal effect
- n_H is the Hill coefficient (steepness)

The fraction term is evaluated as a logistic function of the natural-log
exponent, so extreme inputs saturate to 0 or 1 instead of overflowing.
"""

import typing
from typing import NamedTuple

import numpy as np
from scipy import special

from hillbayes.hillbayes_types import ArrayF

LN10 = float(np.log(10.0))
#: Clamp for the natural-log exponent; exp(700) is still finite in float64.
MAX_EXPONENT = 700.0


class HillTerms(NamedTuple):
    """Mean response and its partial derivatives, one entry per observation."""

    mu: ArrayF
    d_top: ArrayF
    d_bottom: ArrayF
    d_log_ic50: ArrayF
    d_nh: ArrayF


def _exponent(
    log_conc: float | ArrayF, log_ic50: float | ArrayF, nh: float | ArrayF
) -> ArrayF:
    z = LN10 * (np.asarray(log_ic50) - np.asarray(log_conc)) * np.asarray(nh)
    return np.clip(z, -MAX_EXPONENT, MAX_EXPONENT)


# fmt: off
@typing.overload
def hill_fraction(log_conc: float, log_ic50: float, nh: float) -> float: ...

@typing.overload
def hill_fraction(
    log_conc: ArrayF, log_ic50: float | ArrayF, nh: float | ArrayF
) -> ArrayF: ...
# fmt: on


def hill_fraction(
    log_conc: float | ArrayF, log_ic50: float | ArrayF, nh: float | ArrayF
) -> float | ArrayF:
    """Return ``1 / (1 + 10**((log_ic50 - log_conc) * nh))`` without overflow.

    Examples
    --------
    >>> hill_fraction(-6.0, -6.0, 1.0)
    0.5
    >>> hill_fraction(-1000.0, 1000.0, 10.0) < 1e-300
    True
    """
    s = special.expit(-_exponent(log_conc, log_ic50, nh))
    if np.ndim(s) == 0:
        return float(s)
    return s


# fmt: off
@typing.overload
def hill(
    log_conc: float, log_ic50: float, nh: float, top: float, bottom: float
) -> float: ...

@typing.overload
def hill(
    log_conc: ArrayF,
    log_ic50: float | ArrayF,
    nh: float | ArrayF,
    top: float | ArrayF,
    bottom: float | ArrayF,
) -> ArrayF: ...
# fmt: on


def hill(
    log_conc: float | ArrayF,
    log_ic50: float | ArrayF,
    nh: float | ArrayF,
    top: float | ArrayF,
    bottom: float | ArrayF,
) -> float | ArrayF:  # fmt: skip
    r"""Four-parameter Hill equation.

    Parameters
    ----------
    log_conc : float | ArrayF
        log10 ligand concentration(s).
    log_ic50 : float | ArrayF
        log10 concentration at half-maximal response.
    nh : float | ArrayF
        Hill coefficient; positive.
    top : float | ArrayF
        Upper asymptote, reached at low concentration.
    bottom : float | ArrayF
        Lower asymptote, reached at high concentration.

    Returns
    -------
    float | ArrayF
        Expected response(s); same shape as the broadcast inputs.

    Examples
    --------
    At the IC50 the response is halfway between the asymptotes:

    >>> hill(-6.0, log_ic50=-6.0, nh=1.0, top=1.0, bottom=0.0)
    0.5

    One decade below the IC50 with unit slope:

    >>> round(hill(-7.0, log_ic50=-6.0, nh=1.0, top=1.0, bottom=0.0), 4)
    0.9091

    Notes
    -----
    Parameters broadcast with numpy rules, so per-observation parameter
    vectors (as gathered by compound or batch index) can be passed directly.
    """
    s = special.expit(-_exponent(log_conc, log_ic50, nh))
    mu = np.asarray(top) + (np.asarray(bottom) - np.asarray(top)) * s
    if np.ndim(mu) == 0:
        return float(mu)
    return mu


def hill_terms(
    log_conc: ArrayF,
    log_ic50: float | ArrayF,
    nh: float | ArrayF,
    top: float | ArrayF,
    bottom: float | ArrayF,
) -> HillTerms:
    """Evaluate the Hill equation together with its parameter derivatives.

    The derivative of the fraction ``s`` with respect to the natural-log
    exponent ``z`` is ``-s (1 - s)``; ``z = ln(10) (log_ic50 - x) nh``.
    """
    x = np.asarray(log_conc, dtype=np.float64)
    log_ic50_a = np.broadcast_to(np.asarray(log_ic50, dtype=np.float64), x.shape)
    nh_a = np.broadcast_to(np.asarray(nh, dtype=np.float64), x.shape)
    s = special.expit(-_exponent(x, log_ic50_a, nh_a))
    span = np.asarray(bottom) - np.asarray(top)
    mu = np.asarray(top) + span * s
    ds_dz = -s * (1.0 - s)
    d_z = span * ds_dz * LN10
    return HillTerms(
        mu=np.broadcast_to(mu, x.shape).astype(np.float64),
        d_top=1.0 - s,
        d_bottom=s,
        d_log_ic50=np.broadcast_to(d_z * nh_a, x.shape).astype(np.float64),
        d_nh=np.broadcast_to(d_z * (log_ic50_a - x), x.shape).astype(np.float64),
    )
