"""
nnet package
~~~~~~~~~~~~

Fully-connected sigmoid neural network for handwritten digit recognition.
Contains the dense matrix engine, the network implementation, PGM image
loading, the training driver, model persistence and the API server.
"""

from nnet.errors import (
    NeuralNetError,
    DimensionMismatchError,
    OutOfRangeError,
    MalformedStreamError,
    PgmFormatError,
)
from nnet.matrix import Matrix
from nnet.network import Network

__version__ = "1.0.0"

__all__ = [
    "Matrix",
    "Network",
    "NeuralNetError",
    "DimensionMismatchError",
    "OutOfRangeError",
    "MalformedStreamError",
    "PgmFormatError",
]
