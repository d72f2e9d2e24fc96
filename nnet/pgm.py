"""
pgm.py
~~~~~~

Reading and writing plain-text (P2) PGM grayscale images, and deriving
the expected network output for a digit image from its file name.

File names follow the ``<prefix>_<digit>.pgm`` convention, e.g.
``test-image-6883_0.pgm`` holds an image of the digit 0.
"""

import os
from dataclasses import dataclass
from typing import Any, List

import numpy as np

from nnet.errors import PgmFormatError
from nnet.matrix import Matrix

DIGIT_CLASSES = 10


@dataclass
class PgmImage:
    """A decoded image with its pixels as a normalized column matrix."""

    width: int
    height: int
    max_value: int
    pixels: Matrix


def _tokens(text: str) -> List[str]:
    # Everything after '#' on a line is a comment
    return [
        token
        for line in text.splitlines()
        for token in line.split('#', 1)[0].split()
    ]


def read_pgm(path: str) -> PgmImage:
    """
    Read a P2 PGM file.

    Args:
        path: Path of the image file

    Returns:
        PgmImage whose pixels form a ``width*height x 1`` column with every
        value divided by the image's maximum intensity

    Raises:
        OSError: If the file cannot be read
        PgmFormatError: If the file is not a well-formed P2 image
    """
    with open(path, 'r', encoding='ascii') as f:
        try:
            tokens = _tokens(f.read())
        except UnicodeDecodeError as e:
            raise PgmFormatError(f"Non-ASCII data in {path}: {e}") from None

    if not tokens or tokens[0] != 'P2':
        raise PgmFormatError(f"Only P2 PGM format is supported: {path}")
    if len(tokens) < 4:
        raise PgmFormatError(f"Truncated PGM header in {path}")
    try:
        width, height, max_value = (int(t) for t in tokens[1:4])
    except ValueError:
        raise PgmFormatError(
            f"Non-numeric PGM header in {path}: {tokens[1:4]}"
        ) from None
    if width <= 0 or height <= 0 or max_value <= 0:
        raise PgmFormatError(
            f"Invalid PGM dimensions in {path}: "
            f"{width}x{height}, max value {max_value}"
        )

    count = width * height
    values = tokens[4:4 + count]
    if len(values) < count:
        raise PgmFormatError(
            f"Expected {count} pixels in {path}, found {len(values)}"
        )
    try:
        pixels = np.array(values, dtype=np.float64) / max_value
    except ValueError:
        raise PgmFormatError(f"Non-numeric pixel value in {path}") from None

    return PgmImage(
        width=width,
        height=height,
        max_value=max_value,
        pixels=Matrix.from_array(pixels.reshape(count, 1)),
    )


def load_pgm(path: str) -> Matrix:
    """Read a P2 PGM file and return only its normalized pixel column."""
    return read_pgm(path).pixels


def write_pgm(path: str, pixels: Any, max_value: int = 255) -> None:
    """
    Write a 2-D grid of integer intensities as a P2 PGM file.

    Args:
        path: Destination file
        pixels: ``height x width`` array-like of values in [0, max_value]
        max_value: Maximum intensity recorded in the header

    Raises:
        ValueError: If the grid is not 2-D or a value is out of range
    """
    grid = np.asarray(pixels)
    if grid.ndim != 2 or grid.size == 0:
        raise ValueError(f"Expected a non-empty 2-D pixel grid, got {grid.shape}")
    if grid.min() < 0 or grid.max() > max_value:
        raise ValueError(f"Pixel values must lie in [0, {max_value}]")

    height, width = grid.shape
    with open(path, 'w', encoding='ascii') as f:
        f.write(f"P2\n{width} {height}\n{max_value}\n")
        for row in grid.astype(int).tolist():
            f.write(" ".join(str(v) for v in row) + "\n")


def label_from_name(name: str) -> int:
    """
    Extract the digit label from a ``..._<digit>.pgm`` file name.

    Example:
        >>> label_from_name("data/TrainingSet/test-image-6883_0.pgm")
        0
    """
    base = os.path.basename(name)
    pos = base.rfind('_')
    if pos < 0 or pos + 1 >= len(base) or not base[pos + 1].isdigit():
        raise ValueError(f"No digit label in file name: {name}")
    return int(base[pos + 1])


def expected_digit_output(name: str, classes: int = DIGIT_CLASSES) -> Matrix:
    """One-hot ``classes x 1`` column with the labelled digit set to 1.0."""
    label = label_from_name(name)
    if label >= classes:
        raise ValueError(f"Label {label} out of range for {classes} classes")
    expected = Matrix(classes, 1, 0.0)
    expected[label, 0] = 1.0
    return expected
