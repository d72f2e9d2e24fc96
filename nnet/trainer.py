"""
trainer.py
~~~~~~~~~~

Training and assessment driver: loads PGM samples listed in a text file,
trains a network epoch by epoch on a shuffled copy of the samples and
reports how many test images it classifies correctly.

Shuffling always uses a caller-supplied ``numpy.random.Generator`` so a
seeded run is reproducible.
"""

import logging
import os
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import numpy as np

from nnet.matrix import Matrix
from nnet.network import Network
from nnet.pgm import DIGIT_CLASSES, expected_digit_output, read_pgm

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class Sample:
    """One training or test image and its one-hot expected output."""

    name: str
    inputs: Matrix
    expected: Matrix
    width: int = 0
    height: int = 0

    @property
    def label(self) -> int:
        return self.expected.argmax()


@dataclass
class Assessment:
    correct: int
    total: int

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


@dataclass
class EpochResult:
    epoch: int
    total_epochs: int
    correct: int
    total: int
    accuracy: float
    loss: float
    elapsed_time: float  # milliseconds


def read_image_list(list_file: str, limit: Optional[int] = None) -> List[str]:
    """
    Read image file names, one per line, skipping blank lines.

    Args:
        list_file: Text file listing PGM file names
        limit: Maximum number of names to return

    Raises:
        OSError: If the list file cannot be read
    """
    names: List[str] = []
    with open(list_file, 'r', encoding='utf-8') as f:
        for line in f:
            if limit is not None and len(names) >= limit:
                break
            name = line.strip()
            if name:
                names.append(name)
    logger.debug(f"Read {len(names)} image names from {list_file}")
    return names


def load_samples(
    path: str,
    names: Sequence[str],
    classes: int = DIGIT_CLASSES
) -> List[Sample]:
    """
    Load every named PGM file under ``path`` as a Sample.

    Raises:
        OSError: If an image cannot be read
        PgmFormatError: If an image is malformed
        ValueError: If a file name carries no usable label
    """
    samples = []
    for name in names:
        image = read_pgm(os.path.join(path, name))
        samples.append(Sample(
            name=name,
            inputs=image.pixels,
            expected=expected_digit_output(name, classes),
            width=image.width,
            height=image.height,
        ))
    logger.info(f"Loaded {len(samples)} images from {path}")
    return samples


def shuffled(items: Sequence[T], rng: np.random.Generator) -> List[T]:
    """Return a random permutation of ``items``."""
    return [items[i] for i in rng.permutation(len(items))]


def train(
    net: Network,
    samples: Sequence[Sample],
    learning_rate: float,
    mini_batch_size: int = 1
) -> None:
    """Run one pass of gradient descent over ``samples`` in order."""
    if mini_batch_size < 1:
        raise ValueError(
            f"mini_batch_size must be a positive integer, got {mini_batch_size}"
        )
    if mini_batch_size == 1:
        for sample in samples:
            net.learn(sample.inputs, sample.expected, learning_rate)
        return
    for k in range(0, len(samples), mini_batch_size):
        batch = [(s.inputs, s.expected) for s in samples[k:k + mini_batch_size]]
        net.update_mini_batch(batch, learning_rate)


def assess(net: Network, samples: Sequence[Sample]) -> Assessment:
    """Count the samples whose strongest output matches the label."""
    correct = sum(
        1 for sample in samples
        if net.classify(sample.inputs).argmax() == sample.expected.argmax()
    )
    return Assessment(correct=correct, total=len(samples))


def mean_cost(net: Network, samples: Sequence[Sample]) -> float:
    if not samples:
        return 0.0
    return sum(net.cost(s.inputs, s.expected) for s in samples) / len(samples)


def run_epochs(
    net: Network,
    train_samples: Sequence[Sample],
    test_samples: Sequence[Sample],
    epochs: int,
    learning_rate: float,
    rng: np.random.Generator,
    mini_batch_size: int = 1,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    yield_func: Optional[Callable[[], None]] = None
) -> List[EpochResult]:
    """
    Train ``net`` for a number of epochs, assessing it after each one.

    Args:
        net: Network to train in place
        train_samples: Samples used for learning, shuffled every epoch
        test_samples: Samples used for assessment
        epochs: Number of passes over the training samples
        learning_rate: Gradient-descent step size
        rng: Generator used for shuffling
        mini_batch_size: Samples per parameter update
        callback: Called with the epoch result as a dict after each epoch
        yield_func: Called between training and assessment and after each
            epoch, so a cooperative scheduler can run other tasks

    Returns:
        One EpochResult per epoch
    """
    if epochs < 1:
        raise ValueError(f"epochs must be a positive integer, got {epochs}")

    results = []
    for epoch in range(1, epochs + 1):
        logger.info(
            f"Epoch {epoch}/{epochs}: training with {len(train_samples)} images"
        )
        start = time.perf_counter()

        train(net, shuffled(train_samples, rng), learning_rate, mini_batch_size)
        if yield_func is not None:
            yield_func()

        assessment = assess(net, test_samples)
        loss = mean_cost(net, test_samples)
        elapsed = (time.perf_counter() - start) * 1000.0

        result = EpochResult(
            epoch=epoch,
            total_epochs=epochs,
            correct=assessment.correct,
            total=assessment.total,
            accuracy=assessment.accuracy,
            loss=loss,
            elapsed_time=elapsed,
        )
        results.append(result)
        logger.info(
            f"Epoch {epoch}/{epochs}: {assessment.correct} / {assessment.total} "
            f"correct ({assessment.accuracy:.2%}), loss {loss:.6f}, "
            f"elapsed {elapsed:.0f} ms"
        )

        if callback is not None:
            callback(asdict(result))
        if yield_func is not None:
            yield_func()

    return results
