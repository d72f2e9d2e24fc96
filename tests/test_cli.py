"""
test_cli.py
~~~~~~~~~~~

Tests for the nnet-train command line tool.
"""

import pytest

from nnet.cli import build_parser, main, parse_layers
from nnet.network import Network


def cli_args(image_dir, *extra):
    return [
        str(image_dir), '6', '3',
        str(image_dir / "TrainingSetList.txt"),
        str(image_dir / "TestingSetList.txt"),
        '--layers', '4,3,2',
        '--seed', '1',
        *extra,
    ]


@pytest.mark.unit
class TestArguments:
    """Test argument parsing."""

    def test_defaults(self):
        args = build_parser().parse_args(['images'])
        assert args.img_path == 'images'
        assert args.num_train == 5000
        assert args.epochs == 10
        assert args.train_list == 'TrainingSetList.txt'
        assert args.test_list == 'TestingSetList.txt'
        assert args.layers == [784, 30, 10]
        assert args.learning_rate == 0.3

    def test_parse_layers(self):
        assert parse_layers('784,30,10') == [784, 30, 10]

    @pytest.mark.parametrize("text", ['784', '784,x', '4,0,2'])
    def test_parse_layers_rejects(self, text):
        with pytest.raises(Exception):
            parse_layers(text)


@pytest.mark.integration
class TestMain:
    """Test complete command line runs."""

    def test_train_and_save(self, image_dir, tmp_path, capsys):
        saved = tmp_path / "trained.txt"

        status = main(cli_args(image_dir, '--save', str(saved)))

        assert status == 0
        output = capsys.readouterr().out
        assert output.count("Training with 6 images...") == 3
        assert output.count("Correct classification:") == 3
        assert "-- Epoch #0 --" in output
        assert "-- Epoch #2 --" in output
        assert "-- Epoch #3 --" not in output
        assert "Elapsed time =" in output
        assert Network.load(str(saved)).sizes == [4, 3, 2]

    def test_resume_from_saved_network(self, image_dir, tmp_path):
        saved = tmp_path / "start.txt"
        Network([4, 5, 2], initializer='zeros').save(str(saved))

        status = main(cli_args(image_dir, '--load', str(saved),
                               '--save', str(saved)))

        assert status == 0
        assert Network.load(str(saved)).sizes == [4, 5, 2]

    def test_missing_list_file(self, image_dir):
        args = cli_args(image_dir)
        args[3] = str(image_dir / "missing.txt")
        assert main(args) == 1

    def test_input_size_mismatch(self, image_dir):
        args = cli_args(image_dir)
        args[args.index('4,3,2')] = '9,3,2'
        assert main(args) == 1
