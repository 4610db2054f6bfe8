"""Error classes for hillbayes.

Structural problems with the input (malformed index arrays, values outside a
parameter's support) raise immediately. Numerical trouble inside a trajectory
never raises: the sampler treats it as a rejected proposal. Poor convergence is
reported as data, with `ConvergenceFailure` available for callers that want a
hard stop.
"""

from __future__ import annotations

import typing

if typing.TYPE_CHECKING:
    from hillbayes.fitting.data_structures import PosteriorDraws


class HillBayesError(Exception):
    """Base class for all hillbayes errors."""


class DomainError(HillBayesError, ValueError):
    """Raised when a constrained parameter value violates its declared bound."""


class NumericError(HillBayesError, ArithmeticError):
    """Raised when a finite log density is required but cannot be obtained."""


class EntityIndexError(HillBayesError, IndexError):
    """Raised when compound or batch ids are not a dense ``1..count`` range."""


class InvalidDataError(HillBayesError, ValueError):
    """Raised when input data is invalid (shape, missing or non-finite values)."""


class DivergenceWarning(UserWarning):
    """Emitted when a chain records divergent transitions."""


class ConvergenceFailure(HillBayesError):
    """Raised on request when one or more chains failed during warm-up.

    Parameters
    ----------
    chain_id : int
        First failing chain.
    divergences : int
        Divergent warm-up transitions recorded by that chain.
    draws : PosteriorDraws | None
        Partial results of the whole run.
    """

    def __init__(
        self, chain_id: int, divergences: int, draws: PosteriorDraws | None = None
    ) -> None:
        self.chain_id = chain_id
        self.divergences = divergences
        self.draws = draws
        super().__init__(
            f"Chain {chain_id} failed to stabilize during warm-up "
            f"({divergences} divergent transitions)."
        )


class CLIError(HillBayesError):
    """Command-line failure; `__main__` turns these into `click.ClickException`."""


class FileFormatError(CLIError):
    """An input table that cannot be read as long-format observations.

    Parameters
    ----------
    filepath : str
        Offending file.
    expected_format : str
        What the reader expected, e.g. the required columns.
    details : str, optional
        What went wrong.
    """

    def __init__(self, filepath: str, expected_format: str, details: str = "") -> None:
        self.filepath = filepath
        self.expected_format = expected_format
        lines = [f"Invalid file format: {filepath}", f"Expected: {expected_format}"]
        if details:
            lines.append(f"Details: {details}")
        super().__init__("\n".join(lines))


class DataValidationError(CLIError):
    """Data that reads fine but does not fit the requested model."""

    def __init__(self, message: str, suggestions: list[str] | None = None) -> None:
        self.suggestions = list(suggestions or [])
        text = f"Data validation error: {message}"
        if self.suggestions:
            text += "\n\nSuggestions:" + "".join(f"\n  - {s}" for s in self.suggestions)
        super().__init__(text)
