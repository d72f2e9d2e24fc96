"""
cli.py
~~~~~~

Command line tool that trains a network on PGM digit images and reports
its accuracy on a test set after every epoch.

Usage:
    nnet-train <ImgPath> [#Train] [#Epochs] [TrainSetList] [TestSetList]
"""

import argparse
import functools
import logging
import sys
from typing import List, Optional

import numpy as np

from nnet.logging_setup import configure_logging
from nnet.network import INITIALIZERS, Network
from nnet.trainer import load_samples, read_image_list, run_epochs

logger = logging.getLogger(__name__)

DEFAULT_LAYERS = [784, 30, 10]


def parse_layers(text: str) -> List[int]:
    """Parse a comma separated list of layer widths such as ``784,30,10``."""
    try:
        sizes = [int(part) for part in text.split(',')]
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"layer sizes must be comma separated integers: {text!r}"
        ) from None
    if len(sizes) < 2 or any(size <= 0 for size in sizes):
        raise argparse.ArgumentTypeError(
            f"need at least 2 positive layer sizes: {text!r}"
        )
    return sizes


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='nnet-train',
        description='Train and assess a digit-recognition neural network.'
    )
    parser.add_argument('img_path',
                        help='directory holding the training and test images')
    parser.add_argument('num_train', nargs='?', type=int, default=5000,
                        help='number of training images to use (default 5000)')
    parser.add_argument('epochs', nargs='?', type=int, default=10,
                        help='number of training epochs (default 10)')
    parser.add_argument('train_list', nargs='?', default='TrainingSetList.txt',
                        help='file listing the training images')
    parser.add_argument('test_list', nargs='?', default='TestingSetList.txt',
                        help='file listing the test images')
    parser.add_argument('--layers', type=parse_layers, default=DEFAULT_LAYERS,
                        help='layer widths, e.g. 784,30,10')
    parser.add_argument('--learning-rate', type=float, default=0.3,
                        help='gradient descent step size (default 0.3)')
    parser.add_argument('--mini-batch-size', type=int, default=1,
                        help='samples per parameter update (default 1)')
    parser.add_argument('--seed', type=int, default=None,
                        help='seed for initialization and shuffling')
    parser.add_argument('--initializer', choices=INITIALIZERS,
                        default='normal',
                        help='initial parameter values (default normal)')
    parser.add_argument('--load', metavar='FILE',
                        help='start from a previously saved network')
    parser.add_argument('--save', metavar='FILE',
                        help='write the trained network to FILE')
    parser.add_argument('--log-level', default=None,
                        help='logging level (default $LOG_LEVEL or INFO)')
    return parser


def print_epoch(data: dict, train_count: int) -> None:
    """Print one epoch's report, numbering epochs from zero."""
    print(f"-- Epoch #{data['epoch'] - 1} --")
    print(f"Training with {train_count} images...")
    print(
        f"Correct classification: {data['correct']} "
        f"[{data['accuracy']:.2%}]"
    )
    print(f"Elapsed time = {data['elapsed_time']:.0f} milliseconds.")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    rng = np.random.default_rng(args.seed)

    try:
        if args.load:
            net = Network.load(args.load)
        else:
            net = Network(args.layers, rng=rng, initializer=args.initializer)

        train_names = read_image_list(args.train_list, args.num_train)
        test_names = read_image_list(args.test_list)
        train_samples = load_samples(args.img_path, train_names,
                                     classes=net.sizes[-1])
        test_samples = load_samples(args.img_path, test_names,
                                    classes=net.sizes[-1])

        run_epochs(
            net,
            train_samples,
            test_samples,
            epochs=args.epochs,
            learning_rate=args.learning_rate,
            rng=rng,
            mini_batch_size=args.mini_batch_size,
            callback=functools.partial(
                print_epoch, train_count=len(train_samples)
            ),
        )

        if args.save:
            net.save(args.save)
    except OSError as e:
        logger.error(f"Error reading input: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Training failed: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
