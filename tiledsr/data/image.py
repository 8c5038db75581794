# tiledsr - Tiled super-resolution inference
#
# Copyright (c) 2024 - now
# tiledsr developers

"""Helpers for RGBA image buffers.

Image buffers are plain ``np.ndarray`` objects of shape (H, W, 4) and dtype
``np.uint8`` (row-major RGBA). This module converts other common layouts into
that format, copies tile patches out of a source image and reads/writes
image files with ``imageio``.
"""

import logging

import imageio.v2 as imageio
import numpy as np
import skimage.util

logger = logging.getLogger('tiledsrlog')


def as_rgba(img: np.ndarray) -> np.ndarray:
    """Convert an image array of shape (H, W), (H, W, 1), (H, W, 3) or
    (H, W, 4) to an RGBA ``uint8`` image buffer.

    Missing alpha is filled with 255 (opaque). Other dtypes are rescaled
    to ``uint8`` over their full range (16-bit images keep their upper 8
    bits). Float inputs are expected to be in the [0, 1] range."""
    img = np.asarray(img)
    if img.dtype != np.uint8:
        if np.issubdtype(img.dtype, np.floating):
            img = np.clip(img, 0., 1.)
        img = skimage.util.img_as_ubyte(img)
    if img.ndim == 2:
        img = img[..., None]
    if img.ndim != 3 or img.shape[2] not in (1, 3, 4):
        raise ValueError(
            f'Expected an image of shape (H, W[, C]) with C in (1, 3, 4), '
            f'got shape {img.shape}.'
        )
    if img.shape[2] == 4:
        return np.ascontiguousarray(img)
    if img.shape[2] == 1:
        img = np.repeat(img, 3, axis=2)
    alpha = np.full((*img.shape[:2], 1), 255, dtype=np.uint8)
    return np.concatenate([img, alpha], axis=2)


def extract_patch(image: np.ndarray, rect) -> np.ndarray:
    """Copy the pixels of a tile rectangle out of ``image``.

    The returned buffer always has exactly ``rect.h x rect.w`` pixels and
    never shares memory with ``image``."""
    src_h, src_w = image.shape[:2]
    if rect.x < 0 or rect.y < 0 or rect.x + rect.w > src_w or rect.y + rect.h > src_h:
        raise ValueError(
            f'Tile {tuple(rect)} exceeds source bounds (h={src_h}, w={src_w}).'
        )
    if rect.w <= 0 or rect.h <= 0:
        raise ValueError(f'Tile {tuple(rect)} has an empty extent.')
    return image[rect.y:rect.y + rect.h, rect.x:rect.x + rect.w].copy()


def load_image(path: str) -> np.ndarray:
    img = imageio.imread(path)
    logger.debug(f'Loaded {path} with shape {img.shape}, dtype {img.dtype}')
    return as_rgba(np.asarray(img))


def save_image(path: str, img: np.ndarray) -> None:
    """Write an RGBA image buffer. Formats without alpha support (e.g. JPEG)
    receive the RGB channels only."""
    if path.lower().endswith(('.jpg', '.jpeg')):
        img = img[..., :3]
    imageio.imwrite(path, img)
