"""Test cases for the hillbayes.fitting.data_structures module."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from hillbayes.fitting.data_structures import (
    ChainStatus,
    Observations,
    PosteriorDraws,
    SamplerConfig,
    validate_index,
)
from hillbayes.fitting.errors import (
    ConvergenceFailure,
    EntityIndexError,
    FileFormatError,
    InvalidDataError,
)
from hillbayes.fitting.transforms import Level
from hillbayes.fitting.variants import screening, single_curve
from hillbayes.testing.synthetic import Truth


###############################################################################
# validate_index
###############################################################################


def test_validate_index_accepts_dense_ids() -> None:
    """Dense ids come back as int64, integral floats included."""
    np.testing.assert_array_equal(validate_index([2, 1, 3, 3], "compound"), [2, 1, 3, 3])
    assert validate_index(np.array([1.0, 2.0]), "batch").dtype == np.int64


@pytest.mark.parametrize(
    ("ids", "count", "match"),
    [
        ([0, 1, 2], None, "1..2"),
        ([1, 2, 5], 3, "1..3"),
        ([1, 3], None, "missing \\[2\\]"),
        ([1, 2], 3, "missing \\[3\\]"),
        ([1.5, 2.0], None, "integers"),
        ([], None, "non-empty"),
    ],
)
def test_validate_index_errors(ids: list[float], count: int | None, match: str) -> None:
    """Out-of-range, sparse and non-integer ids are rejected."""
    with pytest.raises(EntityIndexError, match=match):
        validate_index(ids, "compound", count)


def test_entity_index_error_is_index_error() -> None:
    """Callers may catch IndexError."""
    with pytest.raises(IndexError):
        validate_index([2, 3], "batch")


###############################################################################
# Observations
###############################################################################


def test_observations_defaults() -> None:
    """Missing ids mean a single compound and batch."""
    obs = Observations([-7.0, -6.0, -5.0], [0.9, 0.5, 0.1])
    assert len(obs) == obs.n_obs == 3
    assert obs.n_compound == obs.n_batch == 1
    assert obs.compound_labels == ("1",)
    np.testing.assert_array_equal(obs.index(Level.COMPOUND), [0, 0, 0])
    assert obs.index(Level.SHARED) is None
    assert obs.count(Level.BATCH) == 1


def test_observations_are_read_only() -> None:
    """Arrays are frozen copies of the inputs."""
    x = np.array([-7.0, -6.0])
    obs = Observations(x, [1.0, 0.0], compound=[1, 2])
    x[0] = 0.0
    assert obs.log_conc[0] == -7.0
    with pytest.raises(ValueError, match="read-only"):
        obs.response[0] = 2.0
    np.testing.assert_array_equal(obs.index(Level.COMPOUND), [0, 1])


@pytest.mark.parametrize(
    ("x", "y"),
    [
        ([-7.0, -6.0], [1.0]),
        ([], []),
        ([-7.0, np.nan], [1.0, 0.5]),
        ([-7.0, -6.0], [1.0, np.inf]),
    ],
)
def test_observations_invalid_data(x: list[float], y: list[float]) -> None:
    """Mismatched, empty or non-finite data raise InvalidDataError."""
    with pytest.raises(InvalidDataError):
        Observations(x, y)


def test_observations_bad_ids() -> None:
    """Ids are checked for length and density."""
    with pytest.raises(EntityIndexError, match="one entry"):
        Observations([-7.0, -6.0], [1.0, 0.5], compound=[1])
    with pytest.raises(EntityIndexError, match="dense"):
        Observations([-7.0, -6.0], [1.0, 0.5], batch=[1, 3])


def test_labels_fix_entity_count() -> None:
    """Labels declare the number of entities, so unseen ids are an error."""
    with pytest.raises(EntityIndexError, match="missing \\[3\\]"):
        Observations([-7.0, -6.0], [1.0, 0.5], compound=[1, 2], compound_labels=("a", "b", "c"))


def test_from_frame_factorizes_labels(caplog: pytest.LogCaptureFixture) -> None:
    """Labels become dense ids in order of first appearance; NaN rows are dropped."""
    df = pd.DataFrame(
        {
            "log_conc": [-7.0, -6.0, -7.0, -6.0, -5.0],
            "response": [1.0, 0.6, 0.9, np.nan, 0.2],
            "compound": ["zeta", "zeta", "alpha", "alpha", "alpha"],
            "batch": ["p2", "p2", "p1", "p1", "p1"],
        }
    )
    with caplog.at_level(logging.WARNING):
        obs = Observations.from_frame(df)
    assert "Dropped 1 rows" in caplog.text
    assert len(obs) == 4
    assert obs.compound_labels == ("zeta", "alpha")
    assert obs.batch_labels == ("p2", "p1")
    np.testing.assert_array_equal(obs.compound, [1, 1, 2, 2])


def test_from_frame_optional_columns() -> None:
    """Absent compound and batch columns mean one entity each."""
    df = pd.DataFrame({"x": [-7.0, -6.0], "y": [1.0, 0.5]})
    obs = Observations.from_frame(df, log_conc="x", response="y")
    assert obs.compound is None
    assert obs.n_compound == 1


def test_from_frame_missing_column() -> None:
    """Required columns must be present."""
    df = pd.DataFrame({"log_conc": [-7.0], "signal": [1.0]})
    with pytest.raises(FileFormatError, match="missing column 'response'"):
        Observations.from_frame(df)


def test_from_csv_round_trip(tmp_path: Path, screen_data: tuple[Observations, Truth]) -> None:
    """`to_frame` output can be read back."""
    obs, _ = screen_data
    fp = tmp_path / "screen.csv"
    obs.to_frame().to_csv(fp, index=False)
    back = Observations.from_csv(fp)
    assert back.compound_labels == obs.compound_labels
    np.testing.assert_allclose(back.response, obs.response)


def test_from_csv_empty_file(tmp_path: Path) -> None:
    """Empty files raise FileFormatError naming the file."""
    fp = tmp_path / "empty.csv"
    fp.write_text("")
    with pytest.raises(FileFormatError, match="empty.csv"):
        Observations.from_csv(fp)


def test_subset_renumbers(screen_data: tuple[Observations, Truth]) -> None:
    """Selected compounds keep their labels and get dense ids."""
    obs, _ = screen_data
    sub = obs.subset([2, 4])
    assert sub.n_compound == 2
    assert sub.compound_labels == ("C2", "C4")
    assert len(sub) == 2 * len(obs) // obs.n_compound


###############################################################################
# SamplerConfig
###############################################################################


def test_sampler_config_defaults() -> None:
    """Defaults follow the customary NUTS settings."""
    cfg = SamplerConfig()
    assert (cfg.chains, cfg.num_warmup, cfg.num_samples) == (4, 1000, 1000)
    assert cfg.target_accept == 0.8
    assert cfg.max_tree_depth == 10


@pytest.mark.parametrize(
    "kwargs",
    [
        {"chains": 0},
        {"num_samples": 0},
        {"target_accept": 1.0},
        {"algorithm": "gibbs"},
        {"metric": "full"},
        {"init": "zero"},
        {"init_radius": 0.0},
    ],
)
def test_sampler_config_invalid(kwargs: dict[str, object]) -> None:
    """Invalid settings raise ValueError."""
    with pytest.raises(ValueError, match="Invalid SamplerConfig"):
        SamplerConfig(**kwargs)  # type: ignore[arg-type]


###############################################################################
# PosteriorDraws
###############################################################################


def test_draws_frame_and_summary(
    make_draws: Callable[..., PosteriorDraws], screen_data: tuple[Observations, Truth]
) -> None:
    """Wide frame has one column per scalar parameter and statistic."""
    obs, truth = screen_data
    draws = make_draws(screening(), obs, truth, n_chain=2, n_draw=50)
    df = draws.to_frame()
    assert len(df) == 100
    assert "bottom[C1]" in df.columns
    assert "log_IC50[C5]" in df.columns
    assert "diverging" in df.columns
    assert draws.flat("bottom").shape == (100, 5)
    assert draws.complete
    assert draws.divergences == {0: 0, 1: 0}
    summary = draws.summary(kind="stats")
    assert "log_IC50[C3]" in summary.index
    idata = draws.to_inference_data()
    assert list(idata.posterior["bottom"].dims) == ["chain", "draw", "compound"]


def test_draws_are_read_only(
    make_draws: Callable[..., PosteriorDraws], single_data: tuple[Observations, Truth]
) -> None:
    """Draw arrays cannot be modified."""
    obs, truth = single_data
    draws = make_draws(single_curve(), obs, truth)
    with pytest.raises(ValueError, match="read-only"):
        draws["top"][0, 0] = 0.0


def test_raise_for_failures(
    make_draws: Callable[..., PosteriorDraws], single_data: tuple[Observations, Truth]
) -> None:
    """A failed chain turns into ConvergenceFailure on request."""
    obs, truth = single_data
    draws = make_draws(single_curve(), obs, truth)
    draws.raise_for_failures()
    failed = type(draws)(
        model=draws.model,
        params=dict(draws.params),
        stats=dict(draws.stats),
        chain_ids=draws.chain_ids,
        statuses=(ChainStatus.DONE, ChainStatus.FAILED),
        n_retained=(100, 0),
        warmup_divergences=(0, 100),
    )
    with pytest.raises(ConvergenceFailure, match="Chain 1") as excinfo:
        failed.raise_for_failures()
    assert excinfo.value.divergences == 100
    assert excinfo.value.draws is failed
    assert failed.usable_chains() == [0]
    assert len(failed.to_frame()) == 100
