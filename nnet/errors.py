"""
errors.py
~~~~~~~~~

Exception types raised by the matrix engine, the network and the image
reader. All of them signal programming or data-integrity errors and are
never retried.
"""


class NeuralNetError(Exception):
    """Base class for all errors raised by this package."""


class DimensionMismatchError(NeuralNetError, ValueError):
    """Operands of a matrix operation have incompatible shapes."""


class OutOfRangeError(NeuralNetError, IndexError):
    """Element access outside the declared shape of a matrix."""


class MalformedStreamError(NeuralNetError, ValueError):
    """A serialized matrix or network is truncated or not numeric."""


class PgmFormatError(NeuralNetError, ValueError):
    """A PGM image file has an unsupported or corrupt layout."""
