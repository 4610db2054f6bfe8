"""
Package-wide test fixtures for hillbayes.

Read more about conftest.py under:
- https://docs.pytest.org/en/stable/fixture.html
- https://docs.pytest.org/en/stable/writing_plugins.html
"""

from __future__ import annotations

from collections.abc import Callable

import numpy as np
import pytest

from hillbayes.fitting.data_structures import (
    STAT_NAMES,
    ChainStatus,
    Observations,
    PosteriorDraws,
    SamplerConfig,
)
from hillbayes.fitting.transforms import Level, ParameterLayout
from hillbayes.fitting.variants import ModelSpec
from hillbayes.testing import make_batch_screening, make_screening, make_single_curve
from hillbayes.testing.synthetic import Truth


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator."""
    return np.random.default_rng(42)


@pytest.fixture
def single_data() -> tuple[Observations, Truth]:
    """One compound, 11 concentrations in triplicate, sigma=0.05."""
    return make_single_curve(seed=1)


@pytest.fixture
def screen_data() -> tuple[Observations, Truth]:
    """Five compounds on the six-point screening design."""
    return make_screening(n_compound=5, replicates=2, seed=2)


@pytest.fixture
def batch_data() -> tuple[Observations, Truth]:
    """Two batches of three compounds each."""
    return make_batch_screening(n_batch=2, compounds_per_batch=3, seed=3)


@pytest.fixture
def fast_config() -> SamplerConfig:
    """Short two-chain run."""
    return SamplerConfig(chains=2, num_warmup=150, num_samples=100, seed=7)


DrawsFactory = Callable[..., PosteriorDraws]


@pytest.fixture
def make_draws() -> DrawsFactory:
    """Build a `PosteriorDraws` scattered around a ground truth, without sampling."""

    def factory(
        model: ModelSpec,
        obs: Observations,
        truth: Truth,
        n_chain: int = 2,
        n_draw: int = 100,
        seed: int = 0,
    ) -> PosteriorDraws:
        rng = np.random.default_rng(seed)
        layout = ParameterLayout(
            model,
            n_compound=obs.n_compound if model.uses_compound else 1,
            n_batch=obs.n_batch if model.uses_batch else 1,
        )
        centre = {
            "top": truth.top,
            "bottom": np.minimum(truth.bottom, truth.top - 0.05),
            "log_IC50": truth.log_IC50,
            "nH": truth.nH,
            "sigma": truth.sigma,
        }
        params = {}
        for name, block in layout.blocks.items():
            value = np.asarray(centre[name], dtype=np.float64)
            if block.spec.level is Level.SHARED:
                value = value.reshape(-1)[0]
            base = np.broadcast_to(value, (n_chain, n_draw, *block.shape))
            noise = rng.normal(0.0, 0.01, base.shape)
            params[name] = base + noise if name != "sigma" else base * np.exp(noise)
        stats: dict[str, np.ndarray] = {
            name: rng.uniform(0.5, 1.0, (n_chain, n_draw)) for name in STAT_NAMES
        }
        stats["diverging"] = np.zeros((n_chain, n_draw), dtype=bool)
        return PosteriorDraws(
            model=model,
            params=params,
            stats=stats,
            chain_ids=tuple(range(n_chain)),
            statuses=(ChainStatus.DONE,) * n_chain,
            n_retained=(n_draw,) * n_chain,
            warmup_divergences=(0,) * n_chain,
            compound_labels=obs.compound_labels if model.uses_compound else ("1",),
            batch_labels=obs.batch_labels if model.uses_batch else ("1",),
        )

    return factory
