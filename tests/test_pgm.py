"""
test_pgm.py
~~~~~~~~~~~

Unit tests for PGM image reading/writing and label extraction.
"""

import pytest

from nnet.errors import PgmFormatError
from nnet.pgm import (
    expected_digit_output,
    label_from_name,
    load_pgm,
    read_pgm,
    write_pgm,
)


@pytest.mark.unit
class TestReadPgm:
    """Test decoding of P2 images."""

    def test_pixels_are_normalized_column(self, tmp_path):
        path = tmp_path / "img_3.pgm"
        path.write_text("P2\n# made by hand\n3 2\n10\n0 5 10\n10 5 0\n")

        image = read_pgm(str(path))

        assert (image.width, image.height, image.max_value) == (3, 2, 10)
        assert image.pixels.shape == (6, 1)
        assert [row[0] for row in image.pixels.tolist()] == [0.0, 0.5, 1.0, 1.0, 0.5, 0.0]

    def test_load_pgm_returns_pixels(self, tmp_path):
        path = tmp_path / "img_1.pgm"
        path.write_text("P2 2 1 4 4 2")
        assert load_pgm(str(path)).tolist() == [[1.0], [0.5]]

    def test_write_then_read(self, tmp_path):
        path = str(tmp_path / "digit_7.pgm")
        write_pgm(path, [[0, 128, 255], [255, 128, 0]])
        image = read_pgm(path)
        assert (image.width, image.height) == (3, 2)
        assert image.pixels[1, 0] == pytest.approx(128 / 255)

    def test_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            read_pgm(str(tmp_path / "missing_0.pgm"))

    @pytest.mark.parametrize("content", [
        "P5\n2 2\n255\n0 0 0 0\n",
        "",
        "P2\n2 2\n",
        "P2\n2 x\n255\n0 0 0 0\n",
        "P2\n2 2\n0\n0 0 0 0\n",
        "P2\n2 2\n255\n0 0 0\n",
        "P2\n2 2\n255\n0 0 0 abc\n",
    ])
    def test_malformed(self, tmp_path, content):
        path = tmp_path / "bad_0.pgm"
        path.write_text(content)
        with pytest.raises(PgmFormatError):
            read_pgm(str(path))

    def test_non_ascii_bytes(self, tmp_path):
        """Test that binary data is reported as a format error."""
        path = tmp_path / "binary_0.pgm"
        path.write_bytes(b"P2\n2 1\n255\n\xff\xfe\n")
        with pytest.raises(PgmFormatError):
            read_pgm(str(path))

    def test_write_rejects_out_of_range_values(self, tmp_path):
        with pytest.raises(ValueError):
            write_pgm(str(tmp_path / "x_0.pgm"), [[0, 300]])


@pytest.mark.unit
class TestLabels:
    """Test deriving expected outputs from file names."""

    def test_label_from_name(self):
        assert label_from_name("data/TrainingSet/test-image-6883_0.pgm") == 0
        assert label_from_name("train_image_12_7.pgm") == 7

    @pytest.mark.parametrize("name", ["image.pgm", "image_.pgm", "image_x.pgm"])
    def test_missing_label(self, name):
        with pytest.raises(ValueError):
            label_from_name(name)

    def test_expected_digit_output_is_one_hot(self):
        expected = expected_digit_output("test-image-6883_4.pgm")
        assert expected.shape == (10, 1)
        assert expected.sum() == 1.0
        assert expected[4, 0] == 1.0
        assert expected.argmax() == 4

    def test_expected_digit_output_class_count(self):
        assert expected_digit_output("a_1.pgm", classes=2).tolist() == [[0.0], [1.0]]
        with pytest.raises(ValueError):
            expected_digit_output("a_5.pgm", classes=2)
