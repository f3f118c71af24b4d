"""
dataset.py
~~~~~~~~~~

Loading labeled digit images from CSV and drawing them as text.

The CSV layout is the common MNIST export: a header line, then one image
per line as ``label,pixel0,pixel1,...`` with 784 integer intensities in
``[0, 255]`` listed row by row.
"""

import math
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

import numpy as np

from digitnet.errors import IOFailure, ParseFailure
from digitnet.matrix import Matrix

logger = logging.getLogger(__name__)

IMAGE_SIDE = 28
NUM_CLASSES = 10

# Pixel intensities are divided by this to land in [0, 1)
PIXEL_SCALE = 256.0

SHADES = [' ', '░', '▒', '▓', '█']


@dataclass
class LabeledSample:
    """A square grayscale image and its digit label."""

    matrix: Matrix
    label: int


def parse_row(
    line: str,
    side: int = IMAGE_SIDE,
    dtype: Any = None,
    path: Optional[str] = None,
    line_number: Optional[int] = None
) -> LabeledSample:
    """
    Parse one CSV row into a labeled sample.

    Empty fields (for example a trailing comma) are ignored.

    Raises:
        ParseFailure: If the label or a pixel is not an integer, the label is
            not a digit, or the pixel count is not ``side * side``
    """
    fields = [field.strip() for field in line.split(',')]
    fields = [field for field in fields if field != '']
    if not fields:
        raise ParseFailure("Empty row", path, line_number)

    try:
        label = int(fields[0])
    except ValueError:
        raise ParseFailure(f"Invalid label: {fields[0]!r}", path, line_number) from None
    if not 0 <= label < NUM_CLASSES:
        raise ParseFailure(
            f"Label {label} outside [0, {NUM_CLASSES - 1}]", path, line_number
        )

    try:
        pixels = np.array([int(field) for field in fields[1:]], dtype=np.int64)
    except ValueError as e:
        raise ParseFailure(f"Invalid pixel value: {e}", path, line_number) from None
    if pixels.size != side * side:
        raise ParseFailure(
            f"Expected {side * side} pixels, found {pixels.size}",
            path,
            line_number
        )

    values = pixels / PIXEL_SCALE
    return LabeledSample(Matrix.from_flat(side, side, values.tolist(), dtype), label)


def load_csv(
    path: str,
    limit: Optional[int] = None,
    side: int = IMAGE_SIDE,
    dtype: Any = None
) -> List[LabeledSample]:
    """
    Load labeled samples from a CSV file.

    Args:
        path: CSV file with a header line
        limit: Maximum number of samples to read (all when None)
        side: Width and height of each image
        dtype: Element type of the image matrices

    Returns:
        Samples in file order

    Raises:
        IOFailure: If the file cannot be read
        ParseFailure: If a row is malformed
    """
    samples: List[LabeledSample] = []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            next(f, None)  # header
            for line_number, line in enumerate(f, start=2):
                if limit is not None and len(samples) >= limit:
                    break
                if line.strip() == '':
                    continue
                samples.append(parse_row(line, side, dtype, path, line_number))
    except UnicodeDecodeError as e:
        raise ParseFailure(f"Not valid UTF-8 text: {e}", path) from e
    except OSError as e:
        raise IOFailure(f"Could not read dataset {path}: {e}") from e

    logger.info(f"Loaded {len(samples)} sample(s) from {path}")
    return samples


def shade(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return SHADES[0]
    index = int(math.ceil(value * (len(SHADES) - 1)))
    return SHADES[min(max(index, 0), len(SHADES) - 1)]


def render_sample(sample: LabeledSample) -> str:
    """Draw a sample as its label followed by one line of shades per row."""
    lines = [
        ''.join(shade(v) for v in row)
        for row in sample.matrix.to_lists()
    ]
    return f"{sample.label}\n" + '\n'.join(lines)
