"""
Combine saved chart images into one 2x2 panel figure.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence

import matplotlib.image as mpimg
import numpy as np

logger = logging.getLogger(__name__)


def _to_rgba(image: np.ndarray) -> np.ndarray:
    """Return a float RGBA copy of an image array read by matplotlib."""
    image = np.asarray(image)
    if image.dtype == np.uint8:
        image = image.astype(np.float32) / 255.0
    else:
        image = image.astype(np.float32)

    if image.ndim == 2:
        image = np.stack([image, image, image], axis=-1)
    if image.shape[2] == 3:
        alpha = np.ones(image.shape[:2] + (1,), dtype=np.float32)
        image = np.concatenate([image, alpha], axis=-1)
    return image


def _pad(image: np.ndarray, height: int, width: int) -> np.ndarray:
    """Pad an RGBA image with opaque white to the given size (bottom/right)."""
    padded = np.ones((height, width, 4), dtype=np.float32)
    padded[: image.shape[0], : image.shape[1]] = image
    return padded


def _row(images: List[np.ndarray]) -> np.ndarray:
    height = max(img.shape[0] for img in images)
    return np.concatenate([_pad(img, height, img.shape[1]) for img in images], axis=1)


def combine_figures(image_paths: Sequence[Path], output_path: Path) -> Path:
    """
    Tile four images into a 2x2 panel and save it.

    The first two images form the top row and the last two the bottom row.
    Images of different sizes are padded with white.

    Args:
        image_paths: Exactly four image files
        output_path: PNG file to write

    Returns:
        Path to the combined figure.

    Raises:
        ValueError: If not exactly four images are given
        FileNotFoundError: If an input image is missing
    """
    image_paths = [Path(p) for p in image_paths]
    if len(image_paths) != 4:
        raise ValueError(f"Expected 4 images for a 2x2 panel, got {len(image_paths)}")

    for path in image_paths:
        if not path.exists():
            raise FileNotFoundError(f"Panel image not found: {path}")

    images = [_to_rgba(mpimg.imread(path)) for path in image_paths]

    top = _row(images[:2])
    bottom = _row(images[2:])
    width = max(top.shape[1], bottom.shape[1])
    combined = np.concatenate(
        [_pad(top, top.shape[0], width), _pad(bottom, bottom.shape[0], width)],
        axis=0,
    )

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    mpimg.imsave(output_path, np.clip(combined, 0.0, 1.0))

    logger.info(f"Saved: {output_path} ({combined.shape[1]}x{combined.shape[0]} px)")
    return output_path
