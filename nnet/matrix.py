"""
matrix.py
~~~~~~~~~

Dense two-dimensional matrix used for all of the network arithmetic.

A Matrix owns a row-major (C-contiguous) float64 numpy array holding
exactly ``rows * cols`` values. Element assignment is the only in-place
mutation; every arithmetic operation returns a new Matrix and leaves its
operands untouched. Operand shapes are checked before any arithmetic so
that a shape mistake fails immediately instead of being broadcast.
"""

import io
import math
import numbers
from collections import deque
from typing import Any, Callable, Deque, Iterable, List, Optional, TextIO, Tuple, Union

import numpy as np

from nnet.errors import DimensionMismatchError, MalformedStreamError, OutOfRangeError


class TokenStream:
    """
    Whitespace tokenizer over a text stream.

    Several matrices can be read one after another from the same
    TokenStream without losing tokens that share a line.
    """

    def __init__(self, source: Union[str, Iterable[str]]):
        if isinstance(source, str):
            source = source.splitlines()
        self._lines = iter(source)
        self._pending: Deque[str] = deque()

    def next_token(self) -> Optional[str]:
        """Return the next token, or None once the stream is exhausted."""
        while not self._pending:
            line = next(self._lines, None)
            if line is None:
                return None
            self._pending.extend(line.split())
        return self._pending.popleft()

    def _require_token(self, what: str) -> str:
        token = self.next_token()
        if token is None:
            raise MalformedStreamError(
                f"Unexpected end of stream while reading {what}"
            )
        return token

    def read_int(self, what: str) -> int:
        token = self._require_token(what)
        try:
            return int(token)
        except ValueError:
            raise MalformedStreamError(
                f"Expected an integer for {what}, got {token!r}"
            ) from None

    def read_float(self, what: str) -> float:
        token = self._require_token(what)
        try:
            return float(token)
        except ValueError:
            raise MalformedStreamError(
                f"Expected a number for {what}, got {token!r}"
            ) from None


def _format_value(value: float) -> str:
    # Integral values print without a fraction so that layer sizes read
    # naturally; everything else, -0.0 included, uses the round-trip repr.
    if (value.is_integer() and abs(value) < 2 ** 53
            and math.copysign(1.0, value) > 0):
        return str(int(value))
    return repr(value)


class Matrix:
    """
    Rectangular grid of floats with element-wise and linear-algebra
    operations.

    Example:
        >>> a = Matrix.from_rows([[1, 2], [3, 4]])
        >>> a.dot(Matrix.column([1, 1])).tolist()
        [[3.0], [7.0]]
    """

    __slots__ = ('_data',)

    def __init__(self, rows: int = 0, cols: int = 0, fill: float = 0.0):
        """
        Create a ``rows x cols`` matrix with every entry set to ``fill``.

        Args:
            rows: Number of rows (may be zero)
            cols: Number of columns (may be zero)
            fill: Initial value of every entry

        Raises:
            ValueError: If either dimension is negative
        """
        if rows < 0 or cols < 0:
            raise ValueError(
                f"Matrix dimensions must be non-negative, got {rows}x{cols}"
            )
        self._data = np.full((rows, cols), fill, dtype=np.float64)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def _wrap(cls, array: np.ndarray) -> 'Matrix':
        """Adopt an array without copying it."""
        result = cls.__new__(cls)
        result._data = np.ascontiguousarray(array, dtype=np.float64)
        return result

    @classmethod
    def from_array(cls, values: Any) -> 'Matrix':
        """
        Build a matrix from a 2-D array-like, copying the values.

        Raises:
            DimensionMismatchError: If the values are jagged or not 2-D
        """
        try:
            array = np.array(values, dtype=np.float64)
        except ValueError as e:
            raise DimensionMismatchError(
                f"Matrix rows must all have the same length: {e}"
            ) from None
        if array.ndim == 1 and array.size == 0:
            array = array.reshape(0, 0)
        if array.ndim != 2:
            raise DimensionMismatchError(
                f"Expected 2-D values, got {array.ndim}-D"
            )
        return cls._wrap(array)

    @classmethod
    def from_rows(cls, rows: Iterable[Iterable[float]]) -> 'Matrix':
        """Build a matrix from a nested sequence of rows."""
        return cls.from_array([list(row) for row in rows])

    @classmethod
    def column(cls, values: Iterable[float]) -> 'Matrix':
        """
        Build an ``n x 1`` column matrix from a flat sequence.

        Raises:
            DimensionMismatchError: If the values are nested
        """
        array = np.array(list(values), dtype=np.float64)
        if array.ndim != 1:
            raise DimensionMismatchError(
                f"Column values must be a flat sequence, got {array.ndim}-D"
            )
        return cls._wrap(array.reshape(-1, 1))

    def copy(self) -> 'Matrix':
        return Matrix._wrap(self._data.copy())

    # ------------------------------------------------------------------
    # Shape
    # ------------------------------------------------------------------

    @property
    def rows(self) -> int:
        return self._data.shape[0]

    @property
    def cols(self) -> int:
        return self._data.shape[1]

    @property
    def height(self) -> int:
        return self._data.shape[0]

    @property
    def width(self) -> int:
        return self._data.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self._data.shape

    @property
    def size(self) -> int:
        return self._data.size

    # ------------------------------------------------------------------
    # Element access
    # ------------------------------------------------------------------

    def _check_row(self, row: int) -> None:
        if not 0 <= row < self.rows:
            raise OutOfRangeError(
                f"Row {row} out of range for {self.rows}x{self.cols} matrix"
            )

    def _check_index(self, key: Any) -> Tuple[int, int]:
        if not isinstance(key, tuple) or len(key) != 2:
            raise TypeError("Matrix indices must be a (row, col) pair")
        row, col = key
        self._check_row(row)
        if not 0 <= col < self.cols:
            raise OutOfRangeError(
                f"Column {col} out of range for {self.rows}x{self.cols} matrix"
            )
        return row, col

    def __getitem__(self, key: Any) -> Union[float, Tuple[float, ...]]:
        # m[i] gives a read-only snapshot of row i
        if isinstance(key, numbers.Integral):
            self._check_row(key)
            return tuple(self._data[key].tolist())
        row, col = self._check_index(key)
        return float(self._data[row, col])

    def __setitem__(self, key: Any, value: float) -> None:
        row, col = self._check_index(key)
        self._data[row, col] = value

    # ------------------------------------------------------------------
    # Linear algebra
    # ------------------------------------------------------------------

    def dot(self, rhs: 'Matrix') -> 'Matrix':
        """
        Standard matrix product ``self x rhs``.

        Raises:
            DimensionMismatchError: If ``self.cols != rhs.rows``
        """
        if self.cols != rhs.rows:
            raise DimensionMismatchError(
                f"Cannot multiply {self.rows}x{self.cols} matrix by "
                f"{rhs.rows}x{rhs.cols} matrix"
            )
        # rhs is laid out transposed so both operands stream row-major
        # along the shared dimension; gemm takes it as a transposed operand.
        rhs_t = np.ascontiguousarray(rhs._data.T)
        return Matrix._wrap(np.dot(self._data, rhs_t.T))

    def transpose(self) -> 'Matrix':
        if self.size == 0:
            return self.copy()
        return Matrix._wrap(self._data.T.copy())

    @property
    def T(self) -> 'Matrix':
        return self.transpose()

    # ------------------------------------------------------------------
    # Element-wise arithmetic
    # ------------------------------------------------------------------

    def _require_same_shape(self, other: 'Matrix', operation: str) -> None:
        if not isinstance(other, Matrix):
            raise TypeError(
                f"Cannot {operation} Matrix and {type(other).__name__}"
            )
        if self.shape != other.shape:
            raise DimensionMismatchError(
                f"Cannot {operation} {self.rows}x{self.cols} and "
                f"{other.rows}x{other.cols} matrices"
            )

    def add(self, other: 'Matrix') -> 'Matrix':
        self._require_same_shape(other, 'add')
        return Matrix._wrap(self._data + other._data)

    def subtract(self, other: 'Matrix') -> 'Matrix':
        self._require_same_shape(other, 'subtract')
        return Matrix._wrap(self._data - other._data)

    def hadamard(self, other: 'Matrix') -> 'Matrix':
        """Element-wise product of two equally shaped matrices."""
        self._require_same_shape(other, 'multiply element-wise')
        return Matrix._wrap(self._data * other._data)

    def scale(self, factor: float) -> 'Matrix':
        return Matrix._wrap(self._data * float(factor))

    def apply(self, fn: Callable[[float], float]) -> 'Matrix':
        """Return a new matrix with ``fn`` mapped over every entry."""
        mapped = np.vectorize(fn, otypes=[np.float64])(self._data)
        return Matrix._wrap(mapped)

    def __add__(self, other: Any) -> 'Matrix':
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.add(other)

    def __sub__(self, other: Any) -> 'Matrix':
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.subtract(other)

    def __mul__(self, other: Any) -> 'Matrix':
        if isinstance(other, Matrix):
            return self.hadamard(other)
        if isinstance(other, numbers.Real):
            return self.scale(other)
        return NotImplemented

    def __rmul__(self, other: Any) -> 'Matrix':
        if isinstance(other, numbers.Real):
            return self.scale(other)
        return NotImplemented

    # ------------------------------------------------------------------
    # Comparison and conversion
    # ------------------------------------------------------------------

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.shape == other.shape and bool(
            np.array_equal(self._data, other._data)
        )

    __hash__ = None  # mutable

    def allclose(self, other: 'Matrix', rtol: float = 1e-9,
                 atol: float = 1e-12) -> bool:
        return self.shape == other.shape and bool(
            np.allclose(self._data, other._data, rtol=rtol, atol=atol)
        )

    def sum(self) -> float:
        return float(self._data.sum())

    def argmax(self) -> int:
        """Row-major index of the largest entry (first one on ties)."""
        if self.size == 0:
            raise ValueError("argmax of an empty matrix")
        return int(np.argmax(self._data))

    def to_array(self) -> np.ndarray:
        return self._data.copy()

    def tolist(self) -> List[List[float]]:
        return self._data.tolist()

    def __repr__(self) -> str:
        return f"Matrix({self.rows}x{self.cols}, {self.tolist()})"

    # ------------------------------------------------------------------
    # Text serialization
    # ------------------------------------------------------------------

    def write(self, stream: TextIO) -> None:
        """
        Write the matrix as a ``rows cols`` header line followed by one
        line of space-separated values per row.
        """
        stream.write(f"{self.rows} {self.cols}\n")
        for row in self._data.tolist():
            stream.write(" ".join(_format_value(v) for v in row) + "\n")

    def serialize(self) -> str:
        buffer = io.StringIO()
        self.write(buffer)
        return buffer.getvalue()

    @classmethod
    def read(cls, source: Union[TokenStream, TextIO, str]) -> 'Matrix':
        """
        Read one matrix written by :meth:`write`.

        Args:
            source: A TokenStream (to keep reading after this matrix),
                a text stream, or a string

        Raises:
            MalformedStreamError: If the header is not two non-negative
                integers, a value is not numeric or the stream ends early
        """
        tokens = source if isinstance(source, TokenStream) else TokenStream(source)
        rows, cols = cls.read_header(tokens)
        return cls.read_values(tokens, rows, cols)

    @staticmethod
    def read_header(tokens: TokenStream) -> Tuple[int, int]:
        """Read the ``rows cols`` line that starts every matrix."""
        rows = tokens.read_int("matrix row count")
        cols = tokens.read_int("matrix column count")
        if rows < 0 or cols < 0:
            raise MalformedStreamError(
                f"Matrix header has negative dimensions: {rows}x{cols}"
            )
        return rows, cols

    @classmethod
    def read_values(cls, tokens: TokenStream, rows: int, cols: int) -> 'Matrix':
        """
        Read ``rows * cols`` values in row-major order.

        Values are collected before any array is allocated, so a header
        that promises more values than the stream holds fails with
        MalformedStreamError instead of exhausting memory.
        """
        values = [
            tokens.read_float(f"entry ({row}, {col})")
            for row in range(rows)
            for col in range(cols)
        ]
        return cls._wrap(np.array(values, dtype=np.float64).reshape(rows, cols))

    @classmethod
    def deserialize(cls, text: str) -> 'Matrix':
        return cls.read(TokenStream(text))
