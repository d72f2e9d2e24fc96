#!/usr/bin/env python3
"""
Export an MNIST NPZ archive to P2 PGM images plus image list files.

The archive is expected to hold ``train_images``/``train_labels`` and
``test_images``/``test_labels`` arrays (28x28 images stored flat, either
as floats in [0, 1] or as 0-255 integers).

Usage:
    python scripts/export_mnist_pgm.py [NPZ_FILE] [OUTPUT_DIR]

The script will:
1. Load the NPZ archive
2. Write every image as <OUTPUT_DIR>/<Set>/<prefix>-<index>_<label>.pgm
3. Write TrainingSetList.txt and TestingSetList.txt into OUTPUT_DIR
4. Verify a sample of the exported images
"""

import os
import sys
from typing import List, Tuple

import numpy as np

from nnet.pgm import label_from_name, read_pgm, write_pgm

IMAGE_SIDE = 28
MAX_VALUE = 255

SPLITS = [
    # (array prefix, directory, file prefix, list file)
    ('train', 'TrainingSet', 'train-image', 'TrainingSetList.txt'),
    ('test', 'TestingSet', 'test-image', 'TestingSetList.txt'),
]


def to_intensities(images: np.ndarray) -> np.ndarray:
    """Convert images to integer intensities in [0, MAX_VALUE]."""
    if np.issubdtype(images.dtype, np.floating):
        images = np.rint(np.clip(images, 0.0, 1.0) * MAX_VALUE)
    return images.astype(int).reshape(len(images), IMAGE_SIDE, IMAGE_SIDE)


def export_split(
    images: np.ndarray,
    labels: np.ndarray,
    output_dir: str,
    directory: str,
    prefix: str
) -> List[str]:
    """
    Write one split of the archive as PGM files.

    Returns:
        The written file names, relative to ``output_dir``
    """
    os.makedirs(os.path.join(output_dir, directory), exist_ok=True)
    names = []
    for index, (image, label) in enumerate(zip(to_intensities(images), labels)):
        name = f"{directory}/{prefix}-{index}_{int(label)}.pgm"
        write_pgm(os.path.join(output_dir, name), image, MAX_VALUE)
        names.append(name)
    return names


def write_list(path: str, names: List[str]) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        for name in names:
            f.write(name + "\n")


def verify_export(output_dir: str, names: List[str],
                  images: np.ndarray, labels: np.ndarray) -> bool:
    """Re-read the first few exported images and compare them."""
    expected = to_intensities(images[:10]) / MAX_VALUE
    for name, pixels, label in zip(names, expected, labels):
        image = read_pgm(os.path.join(output_dir, name))
        assert image.width == IMAGE_SIDE and image.height == IMAGE_SIDE, \
            f"{name} has the wrong size!"
        assert np.allclose(image.pixels.to_array().ravel(), pixels.ravel()), \
            f"{name} pixels don't match!"
        assert label_from_name(name) == int(label), \
            f"{name} label doesn't match!"
    return True


def main() -> None:
    """Main export function."""
    print("=" * 60)
    print("MNIST NPZ -> PGM exporter")
    print("=" * 60)

    npz_path = sys.argv[1] if len(sys.argv) > 1 else os.path.join('data', 'mnist.npz')
    output_dir = sys.argv[2] if len(sys.argv) > 2 else os.path.join('data', 'pgm')

    if not os.path.exists(npz_path):
        print(f"Error: archive not found: {npz_path}")
        sys.exit(1)

    try:
        with np.load(npz_path) as data:
            splits: List[Tuple[str, np.ndarray, np.ndarray]] = [
                (key, data[f'{key}_images'], data[f'{key}_labels'])
                for key, _, _, _ in SPLITS
            ]

        for (key, images, labels), (_, directory, prefix, list_file) in zip(splits, SPLITS):
            print(f"\nExporting {len(images)} {key} images to {directory}/ ...")
            names = export_split(images, labels, output_dir, directory, prefix)
            write_list(os.path.join(output_dir, list_file), names)
            verify_export(output_dir, names, images, labels)
            print(f"Wrote {list_file} ({len(names)} entries)")

        print("\n" + "=" * 60)
        print("EXPORT COMPLETE")
        print("=" * 60)
        print(f"\nTrain with: nnet-train {output_dir} 5000 10 "
              f"{output_dir}/TrainingSetList.txt {output_dir}/TestingSetList.txt")

    except Exception as e:
        print(f"\nError during export: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
