"""Declarative specification of the hierarchical Hill models.

A `ModelSpec` lists the five Hill parameters, the level at which each is
indexed (shared, per compound, per batch), its support and its prior. The
evaluator and the sampler interpret any `ModelSpec` uniformly, so the three
supported shapes differ only in this table:

=====================  ================  ===================  ================
Variant                Shared            Per compound         Per batch
=====================  ================  ===================  ================
single curve           all five          -                    -
screening              top, nH, sigma    bottom, log_IC50     -
screening + batch      top, nH           bottom, log_IC50     sigma
=====================  ================  ===================  ================
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass

from hillbayes.fitting import priors
from hillbayes.fitting.priors import Prior
from hillbayes.fitting.transforms import Constraint, Level

#: Parameter names, in the order they are laid out in the sampler vector.
PARAM_NAMES = ("top", "bottom", "log_IC50", "nH", "sigma")


@dataclass(frozen=True)
class ParamSpec:
    """One model parameter."""

    name: str
    level: Level
    prior: Prior
    constraint: Constraint = Constraint.REAL


@dataclass(frozen=True)
class ModelSpec:
    """Declarative description of one model variant.

    Raises
    ------
    ValueError
        If parameters are missing or carry an unsupported level or support.
    """

    name: str
    params: tuple[ParamSpec, ...]

    def __post_init__(self) -> None:
        """Check the parameter table against the Hill model structure."""
        names = tuple(p.name for p in self.params)
        if names != PARAM_NAMES:
            msg = f"Model '{self.name}' must declare {PARAM_NAMES} in order, got {names}."
            raise ValueError(msg)
        required = {
            "top": (Constraint.REAL, {Level.SHARED}),
            "bottom": (Constraint.BELOW_TOP, {Level.SHARED, Level.COMPOUND}),
            "log_IC50": (Constraint.REAL, {Level.SHARED, Level.COMPOUND}),
            "nH": (Constraint.POSITIVE, {Level.SHARED, Level.COMPOUND}),
            "sigma": (Constraint.POSITIVE, {Level.SHARED, Level.COMPOUND, Level.BATCH}),
        }
        for p in self.params:
            constraint, levels = required[p.name]
            if p.constraint is not constraint or p.level not in levels:
                msg = (
                    f"Parameter '{p.name}' of model '{self.name}' must be "
                    f"{constraint} at one of {sorted(levels)}."
                )
                raise ValueError(msg)

    def __getitem__(self, name: str) -> ParamSpec:
        """Look up a parameter by name."""
        for p in self.params:
            if p.name == name:
                return p
        raise KeyError(name)

    def __iter__(self) -> Iterator[ParamSpec]:
        """Iterate parameters in layout order."""
        return iter(self.params)

    @property
    def uses_compound(self) -> bool:
        """Whether any parameter is indexed by compound."""
        return any(p.level is Level.COMPOUND for p in self.params)

    @property
    def uses_batch(self) -> bool:
        """Whether any parameter is indexed by batch."""
        return any(p.level is Level.BATCH for p in self.params)

    def describe(self) -> str:
        """Multi-line, Stan-like listing of the priors."""
        lines = [f"model {self.name}:"]
        lines.extend(
            f"  {p.name:<9s} [{p.level}] ~ {p.prior}"
            + ("" if p.constraint is Constraint.REAL else f"  ({p.constraint})")
            for p in self.params
        )
        return "\n".join(lines)


def single_curve(
    bottom_sd: float = 0.05,
    log_ic50_sd: float = 1.5,
    nh_prior: Prior | None = None,
) -> ModelSpec:
    """Single dose-response curve with all parameters scalar.

    Parameters
    ----------
    bottom_sd : float
        Scale of the ``bottom ~ Normal(0, bottom_sd)`` prior (0.05 or 0.01).
    log_ic50_sd : float
        Scale of the ``log_IC50 ~ Normal(-6, log_ic50_sd)`` prior (1.5 or 0.7).
    nh_prior : Prior | None
        Hill coefficient prior; ``LogNormal(0, 1)`` when None. ``Normal(1, 0.5)``
        and ``Normal(1, 0.01)`` are the other customary choices.

    Returns
    -------
    ModelSpec
        The single-curve model.
    """
    return ModelSpec(
        "single",
        (
            ParamSpec("top", Level.SHARED, priors.normal(1.0, 0.01)),
            ParamSpec(
                "bottom", Level.SHARED, priors.normal(0.0, bottom_sd), Constraint.BELOW_TOP
            ),
            ParamSpec("log_IC50", Level.SHARED, priors.normal(-6.0, log_ic50_sd)),
            ParamSpec(
                "nH",
                Level.SHARED,
                nh_prior or priors.lognormal(0.0, 1.0),
                Constraint.POSITIVE,
            ),
            ParamSpec("sigma", Level.SHARED, priors.exponential(10.0), Constraint.POSITIVE),
        ),
    )


def screening() -> ModelSpec:
    """Many compounds sharing ``top``, ``nH`` and ``sigma``."""
    return ModelSpec(
        "screening",
        (
            ParamSpec("top", Level.SHARED, priors.normal(1.0, 0.01)),
            ParamSpec(
                "bottom",
                Level.COMPOUND,
                priors.normal(0.25, 0.25),
                Constraint.BELOW_TOP,
            ),
            ParamSpec("log_IC50", Level.COMPOUND, priors.normal(-6.0, 1.5)),
            ParamSpec("nH", Level.SHARED, priors.normal(1.0, 0.01), Constraint.POSITIVE),
            ParamSpec("sigma", Level.SHARED, priors.exponential(10.0), Constraint.POSITIVE),
        ),
    )


def screening_batch() -> ModelSpec:
    """Screening model with one noise level per experimental batch."""
    base = screening()
    return ModelSpec(
        "screening-batch",
        (
            *base.params[:4],
            ParamSpec("sigma", Level.BATCH, priors.exponential(10.0), Constraint.POSITIVE),
        ),
    )


VARIANTS: dict[str, Callable[[], ModelSpec]] = {
    "single": single_curve,
    "screening": screening,
    "screening-batch": screening_batch,
}


def get_variant(name: str) -> ModelSpec:
    """Return the default `ModelSpec` registered under ``name``.

    Raises
    ------
    KeyError
        For unknown variant names.
    """
    try:
        return VARIANTS[name]()
    except KeyError:
        msg = f"Unknown model variant '{name}'; choose from {sorted(VARIANTS)}."
        raise KeyError(msg) from None
