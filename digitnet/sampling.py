"""
sampling.py
~~~~~~~~~~~

Bounded uniform sampling used to initialize weights.

Values are drawn on a fixed grid: the range is scaled by ``SCALE``, an
integer is drawn uniformly from ``[0, scaled_range)`` and divided back.
"""

import math
import logging
from typing import Optional

import numpy as np

from digitnet.config import get_settings
from digitnet.element import ElementType, FLOAT64
from digitnet.errors import NumericConversionFailure

logger = logging.getLogger(__name__)

SCALE = 10_000

_INT64_MAX = np.iinfo(np.int64).max

_rng: Optional[np.random.Generator] = None


def get_rng() -> np.random.Generator:
    """
    Get or create the process-wide random generator.

    Seeded from ``DIGITNET_SEED`` when set.
    """
    global _rng
    if _rng is None:
        seed = get_settings().seed
        if seed is not None:
            logger.debug(f"Seeding random generator with {seed}")
        _rng = np.random.default_rng(seed)
    return _rng


def seed(value: Optional[int]) -> None:
    """Reseed the process-wide generator."""
    global _rng
    _rng = np.random.default_rng(value)


def uniform_distribution(
    low: float,
    high: float,
    rng: Optional[np.random.Generator] = None,
    element: ElementType = FLOAT64
):
    """
    Draw one value approximately uniformly from ``[low, high)``.

    Args:
        low: Inclusive lower bound
        high: Exclusive upper bound, must be greater than ``low``
        rng: Generator to draw from (defaults to the process-wide one)
        element: Element type of the returned value

    Returns:
        A scalar of the requested element type

    Raises:
        ValueError: If ``low >= high``
        NumericConversionFailure: If the scaled range is not representable
    """
    low = float(low)
    high = float(high)
    if not low < high:
        raise ValueError(f"low must be less than high, got [{low}, {high})")

    scaled = (high - low) * SCALE
    if not math.isfinite(scaled) or scaled > _INT64_MAX:
        raise NumericConversionFailure(
            f"Range [{low}, {high}) is too large to sample"
        )
    scaled_range = int(scaled)
    if scaled_range < 1:
        raise NumericConversionFailure(
            f"Range [{low}, {high}) is narrower than 1/{SCALE}"
        )

    if rng is None:
        rng = get_rng()
    step = int(rng.integers(0, scaled_range))
    return element.from_f64(low + step / SCALE)
