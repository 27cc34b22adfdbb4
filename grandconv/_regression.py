"""
_regression.py
==============
Robust trend line through (divergent, convergent) branch-pair scores.

The slope is a windowed median of all pairwise slopes; the intercept is the
plain median of the residuals.  Pairwise slopes are produced by two compiled
passes over the O(m^2) pairs: the first counts survivors so that the second
writes into a single allocation of exactly that size.  Nothing quadratic in
memory is ever materialised.

Filtering (both passes): a pair is dropped when xdelta == 0 (coincident
points, or a vertical step whose slope would be infinite), when the slope is
exactly -1, or when it is exactly 0.
"""

import logging

import numpy as np

from grandconv._cpu_kernels import _collect_slopes_njit, _count_slopes_njit
from grandconv._data import RegressionResult
from grandconv._exceptions import DegenerateInputError
from grandconv._logging import log_regression

logger = logging.getLogger(__name__)


def _as_points(values, label: str) -> np.ndarray:
    arr = np.ascontiguousarray(values, dtype=np.float64)
    if arr.ndim != 1:
        raise ValueError(f"{label} must be one-dimensional, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise DegenerateInputError(f"{label} contains non-finite values")
    return arr


def pairwise_slopes(divergent, convergent) -> np.ndarray:
    """
    Surviving pairwise slopes in (p, q) pair order, unsorted.

    Parameters
    ----------
    divergent, convergent : array-like of float, equal length

    Returns
    -------
    float64[count]
    """
    x = _as_points(divergent, "divergent")
    y = _as_points(convergent, "convergent")
    if x.shape != y.shape:
        raise ValueError(
            f"divergent and convergent differ in length: {x.shape[0]} != {y.shape[0]}"
        )

    count = int(_count_slopes_njit(x, y))
    logger.debug("pass 1: %d surviving slopes", count)

    slopes = np.empty(count, dtype=np.float64)
    written = int(_collect_slopes_njit(x, y, slopes))
    logger.debug("pass 2: %d slopes collected", written)
    if written != count:
        raise RuntimeError(
            f"Slope passes disagree ({count} counted, {written} collected); "
            f"were the inputs modified concurrently?"
        )
    return slopes


def windowed_median(sorted_slopes: np.ndarray) -> float:
    """
    Median of *sorted_slopes* with the window shifted by the position of
    the first slope >= -1.

    ``cutoff`` is that position minus one, or 0 if no slope reaches -1.
    For an even count ``c`` the result is the mean of elements
    ``c//2 + cutoff`` and ``c//2 + cutoff + 1``; for an odd count it is
    element ``(c + 1)//2 + cutoff``.  When every slope is >= -1 this is the
    ordinary median.

    Raises
    ------
    DegenerateInputError
        If the array is empty or the shifted window leaves it.
    """
    c = sorted_slopes.shape[0]
    if c == 0:
        raise DegenerateInputError(
            "Every pairwise slope was filtered out (all 0, -1 or undefined)"
        )

    first = int(np.searchsorted(sorted_slopes, -1.0, side="left"))
    cutoff = first - 1 if first < c else 0

    if c % 2 == 0:
        lo = c // 2 + cutoff
        hi = lo + 1
    else:
        lo = hi = (c + 1) // 2 + cutoff

    if lo < 0 or hi >= c:
        raise DegenerateInputError(
            f"Median window [{lo}, {hi}] falls outside the {c} collected slopes"
        )
    if lo == hi:
        return float(sorted_slopes[lo])
    return 0.5 * (float(sorted_slopes[lo]) + float(sorted_slopes[hi]))


def median(values: np.ndarray) -> float:
    """Plain median of a sorted, non-empty array."""
    n = values.shape[0]
    if n % 2 == 0:
        return (float(values[n // 2]) + float(values[n // 2 - 1])) / 2
    return float(values[n // 2])


def robust_regression(divergent, convergent) -> RegressionResult:
    """
    Fit ``convergent = slope * divergent + intercept``.

    Parameters
    ----------
    divergent : array-like of float
        One entry per branch pair (x axis).
    convergent : array-like of float
        One entry per branch pair (y axis), same length.

    Returns
    -------
    RegressionResult
        ``slope``, ``intercept`` and the number of slopes the median was
        taken over.

    Raises
    ------
    ValueError
        If the inputs differ in length or are not one-dimensional.
    DegenerateInputError
        Fewer than two points, non-finite inputs, no surviving slopes, or a
        median window outside the collected slopes.

    Examples
    --------
    >>> robust_regression([0, 1, 2, 3], [0, 2, 4, 6])
    RegressionResult(slope=2.0, intercept=0.0, n_slopes=6)
    """
    x = _as_points(divergent, "divergent")
    y = _as_points(convergent, "convergent")
    if x.shape != y.shape:
        raise ValueError(
            f"divergent and convergent differ in length: {x.shape[0]} != {y.shape[0]}"
        )
    m = x.shape[0]
    if m < 2:
        raise DegenerateInputError(
            f"Robust regression needs at least 2 branch pairs, got {m}"
        )

    slopes = pairwise_slopes(x, y)
    slopes.sort()
    slope = windowed_median(slopes)

    residuals = np.sort(y - slope * x)
    intercept = median(residuals)

    log_regression(m, slopes.shape[0], slope, intercept)
    return RegressionResult(slope, intercept, int(slopes.shape[0]))
