"""Core data structures in `hillbayes`.

Classes:
--------
- Observations: the read-only dose-response data, with dense compound/batch ids.
- SamplerConfig: sampler and adaptation settings.
- ChainStatus: the per-chain state machine.
- PosteriorDraws: the immutable posterior draw set produced by the sampler.
"""

from __future__ import annotations

import logging
import typing
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

import arviz as az
import numpy as np
import pandas as pd

from hillbayes.fitting.errors import (
    ConvergenceFailure,
    EntityIndexError,
    FileFormatError,
    InvalidDataError,
)
from hillbayes.fitting.transforms import Level

if typing.TYPE_CHECKING:
    from hillbayes.fitting.variants import ModelSpec
    from hillbayes.hillbayes_types import ArrayDict, ArrayF, ArrayI

logger = logging.getLogger(__name__)


def validate_index(ids: ArrayI | Sequence[int], name: str, count: int | None = None) -> ArrayI:
    """Check that ``ids`` is a dense 1-based integer range ``1..count``.

    Parameters
    ----------
    ids : ArrayI | Sequence[int]
        One id per observation.
    name : str
        Entity name used in error messages ("compound" or "batch").
    count : int | None
        Expected number of entities; inferred from ``max(ids)`` when None.

    Returns
    -------
    ArrayI
        The ids as an int64 array.

    Raises
    ------
    EntityIndexError
        On non-integer ids, ids below 1, ids above ``count`` or gaps.

    Examples
    --------
    >>> validate_index([1, 2, 2, 3], "compound")
    array([1, 2, 2, 3])
    """
    arr = np.asarray(ids)
    if arr.ndim != 1 or arr.size == 0:
        msg = f"{name} ids must be a non-empty 1-D array."
        raise EntityIndexError(msg)
    if not np.issubdtype(arr.dtype, np.integer):
        if not np.issubdtype(arr.dtype, np.floating) or not np.all(
            np.isfinite(arr) & (arr == np.round(arr))
        ):
            msg = f"{name} ids must be integers, got dtype {arr.dtype}."
            raise EntityIndexError(msg)
    arr = arr.astype(np.int64)
    n = int(arr.max()) if count is None else count
    if arr.min() < 1 or arr.max() > n:
        msg = f"{name} ids must lie in 1..{n}, got range {arr.min()}..{arr.max()}."
        raise EntityIndexError(msg)
    missing = np.setdiff1d(np.arange(1, n + 1), arr)
    if missing.size:
        msg = f"{name} ids must be dense in 1..{n}; missing {missing.tolist()}."
        raise EntityIndexError(msg)
    return arr


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, copy=True)
    a.flags.writeable = False
    return a


@dataclass(frozen=True)
class Observations:
    """Dose-response observations, immutable once built.

    Attributes
    ----------
    log_conc : ArrayF
        log10 ligand concentration of each observation.
    response : ArrayF
        Measured response of each observation.
    compound : ArrayI | None
        1-based compound id per observation; None means a single compound.
    batch : ArrayI | None
        1-based batch id per observation; None means a single batch.
    compound_labels : tuple[str, ...]
        Names for compounds ``1..n_compound`` (defaults to the ids).
    batch_labels : tuple[str, ...]
        Names for batches ``1..n_batch`` (defaults to the ids).
    """

    log_conc: ArrayF
    response: ArrayF
    compound: ArrayI | None = None
    batch: ArrayI | None = None
    compound_labels: tuple[str, ...] = ()
    batch_labels: tuple[str, ...] = ()
    n_compound: int = field(init=False)
    n_batch: int = field(init=False)

    def __post_init__(self) -> None:
        """Validate shapes, values and entity ids; freeze the arrays."""
        x = np.asarray(self.log_conc, dtype=np.float64)
        y = np.asarray(self.response, dtype=np.float64)
        if x.ndim != 1 or x.shape != y.shape or x.size == 0:
            msg = "'log_conc' and 'response' must be non-empty 1-D arrays of equal length."
            raise InvalidDataError(msg)
        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
            msg = "'log_conc' and 'response' must be finite; drop missing rows first."
            raise InvalidDataError(msg)
        object.__setattr__(self, "log_conc", _readonly(x))
        object.__setattr__(self, "response", _readonly(y))
        for name in ("compound", "batch"):
            ids = getattr(self, name)
            count = len(getattr(self, f"{name}_labels")) or None
            if ids is None:
                n = 1
            else:
                if len(ids) != x.size:
                    msg = f"'{name}' ids must have one entry per observation."
                    raise EntityIndexError(msg)
                ids = _readonly(validate_index(ids, name, count))
                n = int(ids.max()) if count is None else count
                object.__setattr__(self, name, ids)
            object.__setattr__(self, f"n_{name}", n)
            labels = getattr(self, f"{name}_labels")
            if not labels:
                object.__setattr__(
                    self, f"{name}_labels", tuple(str(i) for i in range(1, n + 1))
                )

    def __len__(self) -> int:
        """Number of observations."""
        return int(self.log_conc.size)

    @property
    def n_obs(self) -> int:
        """Number of observations."""
        return len(self)

    def index(self, level: Level) -> ArrayI | None:
        """0-based entity index per observation for ``level``; None when shared."""
        if level is Level.COMPOUND:
            ids = self.compound
        elif level is Level.BATCH:
            ids = self.batch
        else:
            return None
        if ids is None:
            return np.zeros(len(self), dtype=np.int64)
        return ids - 1

    def count(self, level: Level) -> int:
        """Number of entities at ``level``."""
        return {Level.SHARED: 1, Level.COMPOUND: self.n_compound, Level.BATCH: self.n_batch}[level]

    @classmethod
    def from_frame(  # noqa: PLR0913
        cls,
        df: pd.DataFrame,
        log_conc: str = "log_conc",
        response: str = "response",
        compound: str | None = "compound",
        batch: str | None = "batch",
    ) -> Observations:
        """Build observations from a long-format DataFrame.

        Compound and batch columns may hold arbitrary labels; they are
        factorized (in order of first appearance) into dense ids. Missing
        columns are treated as a single entity; rows with missing values are
        dropped with a warning.

        Raises
        ------
        FileFormatError
            If ``log_conc`` or ``response`` columns are absent.
        """
        for col in (log_conc, response):
            if col not in df.columns:
                msg = f"columns '{log_conc}', '{response}' [, '{compound}', '{batch}']"
                raise FileFormatError("<DataFrame>", msg, f"missing column '{col}'")
        cols = [c for c in (log_conc, response, compound, batch) if c and c in df.columns]
        clean = df[cols].dropna()
        if len(clean) < len(df):
            logger.warning("Dropped %d rows with missing values.", len(df) - len(clean))
        ids: dict[str, ArrayI | None] = {"compound": None, "batch": None}
        labels: dict[str, tuple[str, ...]] = {"compound": (), "batch": ()}
        for key, col in (("compound", compound), ("batch", batch)):
            if col and col in clean.columns:
                codes, uniques = pd.factorize(clean[col])
                ids[key] = codes.astype(np.int64) + 1
                labels[key] = tuple(str(u) for u in uniques)
        return cls(
            clean[log_conc].to_numpy(dtype=np.float64),
            clean[response].to_numpy(dtype=np.float64),
            compound=ids["compound"],
            batch=ids["batch"],
            compound_labels=labels["compound"],
            batch_labels=labels["batch"],
        )

    @classmethod
    def from_csv(cls, filep: str | Path, **kwargs: str | None) -> Observations:
        """Read observations from a csv file (see `from_frame` for columns)."""
        fp = Path(filep)
        try:
            df = pd.read_csv(fp)
        except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
            raise FileFormatError(str(fp), "CSV with a header row", str(e)) from e
        try:
            return cls.from_frame(df, **kwargs)  # type: ignore[arg-type]
        except FileFormatError as e:
            raise FileFormatError(str(fp), e.expected_format, str(e)) from e

    def to_frame(self) -> pd.DataFrame:
        """Long-format DataFrame with labels for compound and batch."""
        c_idx = self.index(Level.COMPOUND)
        b_idx = self.index(Level.BATCH)
        return pd.DataFrame(
            {
                "compound": np.asarray(self.compound_labels, dtype=object)[c_idx],
                "batch": np.asarray(self.batch_labels, dtype=object)[b_idx],
                "log_conc": self.log_conc,
                "response": self.response,
            }
        )

    def subset(self, compounds: Sequence[int]) -> Observations:
        """Keep only the given (1-based) compounds, renumbering ids densely."""
        keep = np.asarray(compounds, dtype=np.int64)
        c_idx = self.index(Level.COMPOUND)
        mask = np.isin(c_idx + 1, keep)
        df = self.to_frame()[mask]
        return Observations.from_frame(
            df, batch="batch" if self.batch is not None else None
        )


@dataclass
class SamplerConfig:
    """Sampler configuration.

    Attributes
    ----------
    chains : int
        Number of independent chains.
    num_warmup : int
        Warm-up (adaptation) iterations per chain.
    num_samples : int
        Retained iterations per chain.
    target_accept : float
        Target mean acceptance statistic for step-size adaptation.
    algorithm : str
        "nuts" (multinomial No-U-Turn) or "hmc" (static trajectory length).
    max_tree_depth : int
        NUTS trajectory doubling limit.
    num_leapfrog : int
        Leapfrog steps per static HMC trajectory.
    metric : str
        Mass-matrix adaptation: "diag" or "dense".
    init : str | Mapping[str, float | ArrayF]
        "uniform" (Uniform(-init_radius, init_radius) in unconstrained space),
        "prior", or constrained initial values per parameter.
    init_radius : float
        Half-width of the uniform initialisation box.
    seed : int | None
        Seed of the per-chain random streams.
    cores : int | None
        Worker threads; defaults to one per chain.
    max_seconds : float | None
        Wall-clock budget per chain; the chain stops early when exceeded.
    max_consecutive_divergences : int
        Consecutive divergent warm-up transitions after which warm-up failed.
    warmup_retries : int
        Re-initialisations allowed after a warm-up failure.
    max_delta_h : float
        Energy error flagging a divergent transition.
    """

    chains: int = 4
    num_warmup: int = 1000
    num_samples: int = 1000
    target_accept: float = 0.8
    algorithm: str = "nuts"
    max_tree_depth: int = 10
    num_leapfrog: int = 16
    metric: str = "diag"
    init: str | Mapping[str, float | ArrayF] = "uniform"
    init_radius: float = 2.0
    seed: int | None = None
    cores: int | None = None
    max_seconds: float | None = None
    max_consecutive_divergences: int = 100
    warmup_retries: int = 0
    max_delta_h: float = 1000.0
    # dual averaging
    gamma: float = 0.05
    kappa: float = 0.75
    t0: float = 10.0
    # metric adaptation windows
    init_buffer: int = 75
    term_buffer: int = 50
    base_window: int = 25

    def __post_init__(self) -> None:
        """Validate settings."""
        errors = []
        if self.chains < 1:
            errors.append("chains must be >= 1")
        if self.num_warmup < 0 or self.num_samples < 1:
            errors.append("num_warmup must be >= 0 and num_samples >= 1")
        if not 0 < self.target_accept < 1:
            errors.append("target_accept must lie in (0, 1)")
        if self.algorithm not in {"nuts", "hmc"}:
            errors.append("algorithm must be 'nuts' or 'hmc'")
        if self.metric not in {"diag", "dense"}:
            errors.append("metric must be 'diag' or 'dense'")
        if self.max_tree_depth < 1 or self.num_leapfrog < 1:
            errors.append("max_tree_depth and num_leapfrog must be >= 1")
        if isinstance(self.init, str) and self.init not in {"uniform", "prior"}:
            errors.append("init must be 'uniform', 'prior' or a mapping of values")
        if self.init_radius <= 0:
            errors.append("init_radius must be positive")
        if errors:
            raise ValueError("Invalid SamplerConfig: " + "; ".join(errors))


class ChainStatus(StrEnum):
    """Life cycle of one chain."""

    UNINITIALIZED = "uninitialized"
    WARMUP = "warmup"
    SAMPLING = "sampling"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


#: Sample statistics recorded per retained draw, named as ArviZ expects them.
STAT_NAMES = (
    "lp",
    "acceptance_rate",
    "step_size",
    "tree_depth",
    "n_steps",
    "diverging",
    "energy",
)


@dataclass(frozen=True)
class PosteriorDraws:
    """Immutable posterior draw set.

    Parameter arrays have shape ``(chain, draw, *entity)``; statistics have
    shape ``(chain, draw)``. Chains stopped early are padded with NaN (False
    for ``diverging``) beyond their ``n_retained`` draws.

    Attributes
    ----------
    model : ModelSpec
        Model the draws belong to.
    params : ArrayDict
        Constrained parameter draws keyed by name.
    stats : dict[str, np.ndarray]
        Per-draw sampler statistics (see `STAT_NAMES`).
    chain_ids : tuple[int, ...]
        Chain identifiers, one per leading index.
    statuses : tuple[ChainStatus, ...]
        Final status of each chain.
    n_retained : tuple[int, ...]
        Valid draws per chain.
    warmup_divergences : tuple[int, ...]
        Divergent warm-up transitions per chain.
    compound_labels, batch_labels : tuple[str, ...]
        Coordinates for per-entity parameters.
    """

    model: ModelSpec
    params: ArrayDict
    stats: dict[str, np.ndarray]
    chain_ids: tuple[int, ...]
    statuses: tuple[ChainStatus, ...]
    n_retained: tuple[int, ...]
    warmup_divergences: tuple[int, ...]
    compound_labels: tuple[str, ...] = ()
    batch_labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Freeze every array."""
        object.__setattr__(self, "params", {k: _readonly(v) for k, v in self.params.items()})
        object.__setattr__(self, "stats", {k: _readonly(v) for k, v in self.stats.items()})

    def __getitem__(self, name: str) -> np.ndarray:
        """Draws of parameter ``name``."""
        return self.params[name]

    @property
    def n_chains(self) -> int:
        """Number of chains."""
        return len(self.chain_ids)

    @property
    def complete(self) -> bool:
        """Whether every chain ran to completion."""
        return all(s is ChainStatus.DONE for s in self.statuses)

    @property
    def divergences(self) -> dict[int, int]:
        """Divergent retained transitions per chain."""
        div = self.stats["diverging"]
        return {cid: int(np.sum(div[i])) for i, cid in enumerate(self.chain_ids)}

    def usable_chains(self) -> list[int]:
        """Positions of chains whose draws feed summaries and diagnostics.

        Completed chains when there are any; otherwise every chain holding at
        least one draw (truncated to a common length by the callers).
        """
        done = [i for i, s in enumerate(self.statuses) if s is ChainStatus.DONE]
        return done or [i for i, n in enumerate(self.n_retained) if n > 0]

    def _usable(self) -> tuple[list[int], int]:
        chains = self.usable_chains()
        if not chains:
            msg = "No chain produced any draw."
            raise ValueError(msg)
        return chains, min(self.n_retained[i] for i in chains)

    def flat(self, name: str) -> np.ndarray:
        """Usable draws of ``name`` with chains stacked: ``(n, *entity)``."""
        chains, n = self._usable()
        values = self.params[name][chains, :n]
        return values.reshape(-1, *values.shape[2:])

    def dims(self) -> dict[str, list[str]]:
        """ArviZ dims of the per-entity parameters."""
        out: dict[str, list[str]] = {}
        for p in self.model:
            if p.level is Level.COMPOUND:
                out[p.name] = ["compound"]
            elif p.level is Level.BATCH:
                out[p.name] = ["batch"]
        return out

    def coords(self) -> dict[str, list[str] | list[int]]:
        """ArviZ coordinates for chains and entities."""
        chains, _ = self._usable()
        coords: dict[str, list[str] | list[int]] = {
            "chain": [self.chain_ids[i] for i in chains]
        }
        if self.model.uses_compound:
            coords["compound"] = list(self.compound_labels)
        if self.model.uses_batch:
            coords["batch"] = list(self.batch_labels)
        return coords

    def posterior_dict(self) -> tuple[dict[str, np.ndarray], dict[str, np.ndarray]]:
        """Usable posterior and sample statistics arrays, trimmed to equal length."""
        chains, n = self._usable()
        posterior = {k: np.array(v[chains, :n]) for k, v in self.params.items()}
        stats = {k: np.array(v[chains, :n]) for k, v in self.stats.items()}
        return posterior, stats

    def to_inference_data(self) -> az.InferenceData:
        """ArviZ `InferenceData` with ``posterior`` and ``sample_stats`` groups."""
        posterior, stats = self.posterior_dict()
        return az.from_dict(
            posterior=posterior,
            sample_stats=stats,
            coords=self.coords(),
            dims=self.dims(),
        )

    def summary(self, **kwargs: typing.Any) -> pd.DataFrame:
        """ArviZ summary table (means, sd, HDI, ESS, R-hat) per parameter.

        Raises
        ------
        TypeError
            If az.summary does not return a DataFrame.
        """
        rdf = az.summary(self.to_inference_data(), **kwargs)
        if not isinstance(rdf, pd.DataFrame):
            msg = "az.summary did not return a DataFrame"
            raise TypeError(msg)
        return rdf

    def to_frame(self) -> pd.DataFrame:
        """Wide DataFrame, one row per retained draw, one column per scalar."""
        rows: dict[str, np.ndarray] = {}
        n_draw = next(iter(self.params.values())).shape[1]
        rows["chain"] = np.repeat(np.asarray(self.chain_ids), n_draw)
        rows["draw"] = np.tile(np.arange(n_draw), self.n_chains)
        for p in self.model:
            values = self.params[p.name]
            if p.level is Level.SHARED:
                rows[p.name] = values.reshape(-1)
                continue
            labels = self.compound_labels if p.level is Level.COMPOUND else self.batch_labels
            for j, lbl in enumerate(labels):
                rows[f"{p.name}[{lbl}]"] = values[:, :, j].reshape(-1)
        for k, v in self.stats.items():
            rows[k] = v.reshape(-1)
        df = pd.DataFrame(rows)
        valid = np.concatenate([np.arange(n_draw) < n for n in self.n_retained])
        return df[valid].reset_index(drop=True)

    def raise_for_failures(self) -> None:
        """Raise `ConvergenceFailure` for the first failed chain, if any."""
        for cid, status, div in zip(
            self.chain_ids, self.statuses, self.warmup_divergences, strict=True
        ):
            if status is ChainStatus.FAILED:
                raise ConvergenceFailure(cid, div, self)
