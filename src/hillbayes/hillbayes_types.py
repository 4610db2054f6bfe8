"""Core type definitions in `hillbayes`."""

from collections.abc import Callable

import numpy as np
from numpy.typing import NDArray

# Array types
ArrayF = NDArray[np.float64]  # Generic float64 array
ArrayI = NDArray[np.int64]  # Entity indices

# Dictionary types
ArrayDict = dict[str, ArrayF]  # Parameter name -> values (scalar arrays or vectors)

# Log density with gradient, as consumed by the sampler
LogDensityFunc = Callable[[ArrayF], tuple[float, ArrayF]]
