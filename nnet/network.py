"""
network.py
~~~~~~~~~~

A fully-connected feed-forward neural network with sigmoid activations,
trained one sample at a time with gradient descent and back-propagation.

The algorithm follows the one in Michael Nielsen's "Neural Networks and
Deep Learning" (http://neuralnetworksanddeeplearning.com/), using the
quadratic cost, with all numeric work delegated to :class:`Matrix`.
"""

import io
import logging
import math
import numbers
from typing import List, Optional, Sequence, TextIO, Tuple, Union

import numpy as np

from nnet.errors import DimensionMismatchError, MalformedStreamError
from nnet.matrix import Matrix, TokenStream

logger = logging.getLogger(__name__)

INITIALIZERS = ('normal', 'zeros')


def sigmoid(z: float) -> float:
    """The logistic function, evaluated without overflowing exp()."""
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    e = math.exp(z)
    return e / (1.0 + e)


def sigmoid_prime(z: float) -> float:
    """Derivative of the logistic function at pre-activation ``z``."""
    s = sigmoid(z)
    return s * (1.0 - s)


class Network:
    """
    Fully-connected sigmoid network.

    ``weights[l]`` is a ``sizes[l+1] x sizes[l]`` matrix and ``biases[l]``
    a ``sizes[l+1] x 1`` column, for every transition ``l`` between
    consecutive layers.
    """

    def __init__(
        self,
        sizes: Sequence[int],
        rng: Optional[np.random.Generator] = None,
        initializer: str = 'normal'
    ):
        """
        Create a network with the given layer widths.

        Args:
            sizes: Number of neurons per layer, input layer first
            rng: Random generator used by the ``normal`` initializer.
                A freshly seeded one is used when omitted.
            initializer: ``normal`` draws every weight and bias from a
                standard normal distribution; ``zeros`` sets them all to 0

        Raises:
            ValueError: If there are fewer than two layers, a width is not
                a positive integer, or the initializer is unknown
        """
        sizes = list(sizes)
        if len(sizes) < 2:
            raise ValueError(
                f"A network needs at least 2 layers, got {len(sizes)}"
            )
        for size in sizes:
            if (not isinstance(size, numbers.Integral)
                    or isinstance(size, bool) or size <= 0):
                raise ValueError(
                    f"Layer sizes must be positive integers, got {sizes}"
                )
        if initializer not in INITIALIZERS:
            raise ValueError(
                f"Unknown initializer {initializer!r}, "
                f"expected one of {INITIALIZERS}"
            )

        self.sizes: List[int] = [int(size) for size in sizes]
        self.num_layers = len(self.sizes)

        if initializer == 'normal' and rng is None:
            rng = np.random.default_rng()

        self.biases: List[Matrix] = []
        self.weights: List[Matrix] = []
        for rows, cols in zip(self.sizes[1:], self.sizes[:-1]):
            if initializer == 'normal':
                self.biases.append(
                    Matrix.from_array(rng.standard_normal((rows, 1)))
                )
                self.weights.append(
                    Matrix.from_array(rng.standard_normal((rows, cols)))
                )
            else:
                self.biases.append(Matrix(rows, 1))
                self.weights.append(Matrix(rows, cols))

        logger.debug(
            f"Created network {self.sizes} with {initializer} initialization"
        )

    @classmethod
    def from_parameters(
        cls,
        biases: Sequence[Matrix],
        weights: Sequence[Matrix]
    ) -> 'Network':
        """
        Build a network from explicit parameter matrices.

        The layer sizes are inferred from the weight shapes. The matrices
        are copied.

        Raises:
            DimensionMismatchError: If the matrices do not chain together
        """
        if not weights or len(biases) != len(weights):
            raise DimensionMismatchError(
                f"Need the same non-zero number of bias and weight matrices, "
                f"got {len(biases)} and {len(weights)}"
            )
        sizes = [weights[0].cols] + [w.rows for w in weights]
        for layer, (bias, weight) in enumerate(zip(biases, weights)):
            if weight.shape != (sizes[layer + 1], sizes[layer]):
                raise DimensionMismatchError(
                    f"Weight matrix {layer} is {weight.rows}x{weight.cols}, "
                    f"expected {sizes[layer + 1]}x{sizes[layer]}"
                )
            if bias.shape != (sizes[layer + 1], 1):
                raise DimensionMismatchError(
                    f"Bias matrix {layer} is {bias.rows}x{bias.cols}, "
                    f"expected {sizes[layer + 1]}x1"
                )
        try:
            net = cls(sizes, initializer='zeros')
        except ValueError as e:
            raise DimensionMismatchError(str(e)) from None
        net.biases = [bias.copy() for bias in biases]
        net.weights = [weight.copy() for weight in weights]
        return net

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def _check_column(matrix: Matrix, rows: int, what: str) -> None:
        if matrix.shape != (rows, 1):
            raise DimensionMismatchError(
                f"The {what} must be a {rows}x1 column, "
                f"got {matrix.rows}x{matrix.cols}"
            )

    def classify(self, inputs: Matrix) -> Matrix:
        """
        Feed ``inputs`` forward through every layer.

        Args:
            inputs: ``sizes[0] x 1`` column of input values

        Returns:
            ``sizes[-1] x 1`` column of output activations
        """
        self._check_column(inputs, self.sizes[0], 'input')
        activation = inputs
        for bias, weight in zip(self.biases, self.weights):
            activation = (weight.dot(activation) + bias).apply(sigmoid)
        return activation

    def cost(self, inputs: Matrix, expected: Matrix) -> float:
        """Quadratic cost ``0.5 * ||classify(inputs) - expected||^2``."""
        self._check_column(expected, self.sizes[-1], 'expected output')
        diff = self.classify(inputs) - expected
        return 0.5 * diff.hadamard(diff).sum()

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def backprop(
        self,
        inputs: Matrix,
        expected: Matrix
    ) -> Tuple[List[Matrix], List[Matrix]]:
        """
        Compute the gradient of the cost for a single sample.

        Returns:
            ``(nabla_b, nabla_w)``, layer-by-layer lists shaped like
            ``biases`` and ``weights``
        """
        self._check_column(inputs, self.sizes[0], 'input')
        self._check_column(expected, self.sizes[-1], 'expected output')

        nabla_b = [Matrix(b.rows, b.cols) for b in self.biases]
        nabla_w = [Matrix(w.rows, w.cols) for w in self.weights]

        # feedforward
        activation = inputs
        activations = [inputs]  # activations, layer by layer
        zs = []  # pre-activations, layer by layer
        for bias, weight in zip(self.biases, self.weights):
            z = weight.dot(activation) + bias
            zs.append(z)
            activation = z.apply(sigmoid)
            activations.append(activation)

        # backward pass
        delta = (activations[-1] - expected) * zs[-1].apply(sigmoid_prime)
        nabla_b[-1] = delta
        nabla_w[-1] = delta.dot(activations[-2].transpose())
        # l = 1 is the output layer, l = 2 the one before it, and so on.
        for l in range(2, self.num_layers):
            sp = zs[-l].apply(sigmoid_prime)
            delta = self.weights[-l + 1].transpose().dot(delta) * sp
            nabla_b[-l] = delta
            nabla_w[-l] = delta.dot(activations[-l - 1].transpose())
        return nabla_b, nabla_w

    @staticmethod
    def _check_learning_rate(learning_rate: float) -> None:
        if not learning_rate > 0:
            raise ValueError(
                f"learning_rate must be a positive number, got {learning_rate}"
            )

    def _apply_gradients(
        self,
        nabla_b: Sequence[Matrix],
        nabla_w: Sequence[Matrix],
        step: float
    ) -> None:
        for layer in range(len(self.weights)):
            self.weights[layer] = self.weights[layer] - nabla_w[layer] * step
            self.biases[layer] = self.biases[layer] - nabla_b[layer] * step

    def learn(
        self,
        inputs: Matrix,
        expected: Matrix,
        learning_rate: float
    ) -> None:
        """
        Perform one gradient-descent step on a single training sample.

        Args:
            inputs: ``sizes[0] x 1`` column of input values
            expected: ``sizes[-1] x 1`` column of desired outputs
            learning_rate: Step size, must be positive

        Raises:
            DimensionMismatchError: If a column has the wrong shape
            ValueError: If the learning rate is not positive
        """
        self._check_learning_rate(learning_rate)
        nabla_b, nabla_w = self.backprop(inputs, expected)
        self._apply_gradients(nabla_b, nabla_w, learning_rate)

    def update_mini_batch(
        self,
        batch: Sequence[Tuple[Matrix, Matrix]],
        learning_rate: float
    ) -> None:
        """
        Apply one update using the gradient averaged over ``batch``.

        Args:
            batch: ``(inputs, expected)`` pairs
            learning_rate: Step size, must be positive
        """
        self._check_learning_rate(learning_rate)
        if not batch:
            return
        nabla_b = [Matrix(b.rows, b.cols) for b in self.biases]
        nabla_w = [Matrix(w.rows, w.cols) for w in self.weights]
        for inputs, expected in batch:
            delta_nabla_b, delta_nabla_w = self.backprop(inputs, expected)
            nabla_b = [nb + dnb for nb, dnb in zip(nabla_b, delta_nabla_b)]
            nabla_w = [nw + dnw for nw, dnw in zip(nabla_w, delta_nabla_w)]
        self._apply_gradients(nabla_b, nabla_w, learning_rate / len(batch))

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def write(self, stream: TextIO) -> None:
        """
        Write the layer sizes (as a ``1 x L`` matrix), then every bias
        matrix, then every weight matrix, each followed by a blank line.
        """
        Matrix.from_rows([self.sizes]).write(stream)
        stream.write("\n")
        for bias in self.biases:
            bias.write(stream)
            stream.write("\n")
        for weight in self.weights:
            weight.write(stream)
            stream.write("\n")

    def serialize(self) -> str:
        buffer = io.StringIO()
        self.write(buffer)
        return buffer.getvalue()

    @staticmethod
    def _read_block(
        tokens: TokenStream,
        shape: Tuple[int, int],
        what: str
    ) -> Matrix:
        rows, cols = Matrix.read_header(tokens)
        if (rows, cols) != shape:
            raise MalformedStreamError(
                f"{what} is {rows}x{cols}, "
                f"expected {shape[0]}x{shape[1]}"
            )
        return Matrix.read_values(tokens, rows, cols)

    @classmethod
    def read(cls, source: Union[TokenStream, TextIO, str]) -> 'Network':
        """
        Read a network written by :meth:`write`.

        Raises:
            MalformedStreamError: If the stream is truncated, not numeric,
                or a block does not match the declared layer sizes
        """
        tokens = source if isinstance(source, TokenStream) else TokenStream(source)
        layer_sizes = Matrix.read(tokens)
        if layer_sizes.rows != 1 or layer_sizes.cols < 2:
            raise MalformedStreamError(
                f"Layer sizes must be a 1xL matrix with L >= 2, "
                f"got {layer_sizes.rows}x{layer_sizes.cols}"
            )
        sizes = []
        for value in layer_sizes[0]:
            if not value.is_integer() or value <= 0:
                raise MalformedStreamError(
                    f"Layer sizes must be positive integers, got {value}"
                )
            sizes.append(int(value))

        biases = [
            cls._read_block(tokens, (rows, 1), f"Bias matrix {layer}")
            for layer, rows in enumerate(sizes[1:])
        ]
        weights = [
            cls._read_block(tokens, (rows, cols), f"Weight matrix {layer}")
            for layer, (rows, cols) in enumerate(zip(sizes[1:], sizes[:-1]))
        ]
        return cls.from_parameters(biases, weights)

    @classmethod
    def deserialize(cls, text: str) -> 'Network':
        return cls.read(TokenStream(text))

    def save(self, path: str) -> None:
        with open(path, 'w', encoding='utf-8') as f:
            self.write(f)
        logger.info(f"Saved network {self.sizes} to {path}")

    @classmethod
    def load(cls, path: str) -> 'Network':
        with open(path, 'r', encoding='utf-8') as f:
            net = cls.read(f)
        logger.info(f"Loaded network {net.sizes} from {path}")
        return net

    # ------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Network):
            return NotImplemented
        return (
            self.sizes == other.sizes
            and self.biases == other.biases
            and self.weights == other.weights
        )

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        return f"Network(sizes={self.sizes})"
