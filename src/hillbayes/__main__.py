"""Command-line interface."""

from __future__ import annotations

import logging
from pathlib import Path

import click
from click import Context, Path as cPath

from hillbayes import __fit_out_dir__, configure_logging
from hillbayes.fitting import models
from hillbayes.fitting.bayes import fit_hill
from hillbayes.fitting.data_structures import Observations, SamplerConfig
from hillbayes.fitting.errors import (
    DataValidationError,
    EntityIndexError,
    FileFormatError,
    InvalidDataError,
    NumericError,
)
from hillbayes.fitting.posterior import LogPosterior
from hillbayes.fitting.variants import VARIANTS, ModelSpec, get_variant


@click.group()
@click.pass_context
@click.version_option(message="%(version)s")
@click.option("--verbose", "-v", count=True, help="Increase verbosity: -v for INFO, -vv for DEBUG. Default is WARNING.")  # fmt: skip
@click.option("--quiet", "-q", is_flag=True, help="Silence terminal output; show only ERROR messages.")  # fmt: skip
def hillbayes(ctx: Context, verbose: int, quiet: bool) -> None:
    """Bayesian Hill dose-response fitting."""
    ctx.ensure_object(dict)
    ctx.obj["VERBOSE"] = verbose
    ctx.obj["QUIET"] = quiet


@hillbayes.command(context_settings={"ignore_unknown_options": True})
@click.argument("log_ic50", type=float)
@click.argument("nh", type=float)
@click.argument("top", type=float)
@click.argument("bottom", type=float)
@click.argument("log_conc", type=float)
def hill(log_ic50: float, nh: float, top: float, bottom: float, log_conc: float) -> None:
    """Evaluate the Hill equation at LOG_CONC."""
    click.echo(models.hill(log_conc, log_ic50=log_ic50, nh=nh, top=top, bottom=bottom))


def _load_observations(
    csv_file: str, log_conc: str, response: str, compound: str, batch: str
) -> Observations:
    """Read the csv file, converting data errors into CLI errors.

    Raises
    ------
    click.ClickException
        If the file cannot be parsed or holds invalid data.
    """
    try:
        return Observations.from_csv(
            csv_file, log_conc=log_conc, response=response, compound=compound, batch=batch
        )
    except FileFormatError as e:
        raise click.ClickException(str(e)) from e
    except (EntityIndexError, InvalidDataError) as e:
        msg = f"Invalid data in {csv_file}: {e}"
        raise click.ClickException(msg) from e


def _check_model(model: ModelSpec, obs: Observations) -> LogPosterior:
    """Validate that ``model`` can be fitted to ``obs``.

    Raises
    ------
    DataValidationError
        If the variant does not match the data layout.
    """
    try:
        return LogPosterior(model, obs)
    except InvalidDataError as e:
        raise DataValidationError(
            str(e),
            suggestions=[
                "Use --variant screening or --variant screening-batch",
                "Or keep a single compound in the input file",
            ],
        ) from e


@hillbayes.command()
@click.pass_context
@click.argument("csv_file", type=cPath(exists=True, dir_okay=False))
@click.option("--variant", type=click.Choice(sorted(VARIANTS)), default="screening", show_default=True, help="Model variant.")  # fmt: skip
@click.option("--log-conc-col", default="log_conc", show_default=True, help="Column with log10 concentrations.")  # fmt: skip
@click.option("--response-col", default="response", show_default=True, help="Column with responses.")  # fmt: skip
@click.option("--compound-col", default="compound", show_default=True, help="Column with compound labels (optional).")  # fmt: skip
@click.option("--batch-col", default="batch", show_default=True, help="Column with batch labels (optional).")  # fmt: skip
@click.option("--chains", default=4, show_default=True, help="Number of chains.")
@click.option("--warmup", "num_warmup", default=1000, show_default=True, help="Warm-up iterations per chain.")  # fmt: skip
@click.option("--samples", "num_samples", default=1000, show_default=True, help="Retained draws per chain.")  # fmt: skip
@click.option("--target-accept", default=0.8, show_default=True, help="Target acceptance statistic.")  # fmt: skip
@click.option("--algorithm", type=click.Choice(["nuts", "hmc"]), default="nuts", show_default=True, help="Transition kernel.")  # fmt: skip
@click.option("--metric", type=click.Choice(["diag", "dense"]), default="diag", show_default=True, help="Mass-matrix adaptation.")  # fmt: skip
@click.option("--init", type=click.Choice(["uniform", "prior"]), default="uniform", show_default=True, help="Initialization strategy.")  # fmt: skip
@click.option("--seed", type=int, default=None, help="Random seed.")
@click.option("--max-seconds", type=float, default=None, help="Wall-clock budget per chain.")  # fmt: skip
@click.option("--out", "-o", type=cPath(), default=__fit_out_dir__, show_default=True, help="Output folder.")  # fmt: skip
@click.option("--dry-run", is_flag=True, help="Validate inputs without sampling.")
def fit(  # noqa: PLR0913
    ctx: Context,
    csv_file: str,
    variant: str,
    log_conc_col: str,
    response_col: str,
    compound_col: str,
    batch_col: str,
    chains: int,
    num_warmup: int,
    num_samples: int,
    target_accept: float,
    algorithm: str,
    metric: str,
    init: str,
    seed: int | None,
    max_seconds: float | None,
    out: str,
    dry_run: bool,
) -> None:
    """Fit a Hill model variant to CSV_FILE by NUTS sampling.

    CSV_FILE : long-format table, one observation per row.

    Writes summary.csv (posterior summary), draws.csv (all draws and sampler
    statistics), diagnostics.csv (R-hat, ESS and flags) and chains.csv
    (status and divergences per chain) into the output folder.
    """
    verbose = ctx.obj.get("VERBOSE", 0)
    quiet = ctx.obj.get("QUIET", False)
    configure_logging(verbose=verbose, quiet=quiet, log_file="hillbayes_fit.log")
    logger = logging.getLogger("hillbayes.cli.fit")
    logger.debug("CLI started")
    try:
        config = SamplerConfig(
            chains=chains,
            num_warmup=num_warmup,
            num_samples=num_samples,
            target_accept=target_accept,
            algorithm=algorithm,
            metric=metric,
            init=init,
            seed=seed,
            max_seconds=max_seconds,
        )
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    model = get_variant(variant)
    obs = _load_observations(csv_file, log_conc_col, response_col, compound_col, batch_col)
    try:
        target = _check_model(model, obs)
    except DataValidationError as e:
        raise click.ClickException(str(e)) from e

    if dry_run:
        click.echo(f"✓ {len(obs)} observations, {obs.n_compound} compounds, {obs.n_batch} batches")  # fmt: skip
        click.echo(f"✓ {model.describe()}")
        click.echo(f"✓ {target.dim} unconstrained parameters")
        click.echo("Validation successful. Remove --dry-run to sample.")
        return

    logger.info("Input: %s", Path(csv_file).resolve())
    try:
        result = fit_hill(model, obs, config)
    except NumericError as e:
        msg = f"Sampling failed: {e}\nTry --init prior or a lower --target-accept."
        raise click.ClickException(msg) from e
    if result.diagnostics.n_draws == 0:
        msg = f"No draws retained.\n{result.pprint()}\nSee hillbayes_fit.log for details."
        raise click.ClickException(msg)

    out_fp = Path(out)
    try:
        out_fp.mkdir(parents=True, exist_ok=True)
        result.draws.summary().to_csv(out_fp / "summary.csv")
        result.draws.to_frame().to_csv(out_fp / "draws.csv", index=False)
        result.diagnostics.table.to_csv(out_fp / "diagnostics.csv")
        result.diagnostics.chain_frame().to_csv(out_fp / "chains.csv")
    except OSError as e:
        msg = f"Error writing output files to {out_fp}: {e}"
        raise click.ClickException(msg) from e
    click.echo(result.pprint())
    if not result.is_valid():
        click.echo("Convergence issues detected; see diagnostics.csv.", err=True)
