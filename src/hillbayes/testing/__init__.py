"""Testing utilities for hillbayes.

Synthetic dose-response datasets with known ground truth, shared by the test
suite and by recovery checks.
"""

from hillbayes.testing.synthetic import (
    Truth,
    make_batch_screening,
    make_screening,
    make_single_curve,
)

__all__ = [
    "Truth",
    "make_batch_screening",
    "make_screening",
    "make_single_curve",
]
