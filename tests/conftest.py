"""
conftest.py
~~~~~~~~~~~

Shared fixtures: a tiny on-disk data set of 2x2 PGM digit images.
"""

import pytest

from nnet.matrix import Matrix
from nnet.network import Network
from nnet.pgm import write_pgm

# Left column lit for a 0, right column lit for a 1
PATTERNS = {
    0: [[255, 0], [255, 0]],
    1: [[0, 255], [0, 255]],
}


@pytest.fixture
def image_dir(tmp_path):
    """Directory with eight labelled images plus training and test lists."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    names = []
    for index in range(8):
        label = index % 2
        name = f"img-{index}_{label}.pgm"
        write_pgm(str(data_dir / name), PATTERNS[label])
        names.append(name)

    (data_dir / "TrainingSetList.txt").write_text("\n".join(names[:6]) + "\n")
    (data_dir / "TestingSetList.txt").write_text("\n".join(names[6:]) + "\n")
    return data_dir


@pytest.fixture
def pattern_network():
    """A 4-2 network that tells the two patterns apart perfectly."""
    return Network.from_parameters(
        biases=[Matrix.column([0.0, 0.0])],
        weights=[Matrix.from_rows([
            [10.0, -10.0, 10.0, -10.0],
            [-10.0, 10.0, -10.0, 10.0],
        ])],
    )
