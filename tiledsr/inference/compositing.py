# tiledsr - Tiled super-resolution inference
#
# Copyright (c) 2024 - now
# tiledsr developers

"""Seam-free stitching of upscaled tiles into one output image.

For every tile, ``SeamCompositor`` determines which part of the upscaled patch
is committed to the output (its interior, without the context padding) and
where it goes. ``OutputAssembler`` owns the output buffer and applies these
regions.

Region boundaries are computed from source coordinates with the same rounding
for every tile, so the end of one tile's destination region is exactly the
start of the next one's. Together, the regions of a tile grid partition the
output image.
"""

import logging
from typing import NamedTuple, Optional, Tuple

import numpy as np
import skimage.transform

from tiledsr.inference.tiling import TileRect

logger = logging.getLogger('tiledsrlog')


class Rect(NamedTuple):
    x: int
    y: int
    w: int
    h: int


class CompositeRegion(NamedTuple):
    """``src`` region in patch output coordinates is copied to ``dst`` in
    output image coordinates. Both rectangles have the same size."""
    src: Rect
    dst: Rect


class _AxisRegion(NamedTuple):
    src_offset: int
    dst_offset: int
    extent: int


def _axis_region(
        nominal: int,
        origin: int,
        touches_lead: bool,
        touches_far: bool,
        src_dim: int,
        padding: int,
        step: int,
        scale: float,
        patch_dim: int,
        final_dim: int
) -> _AxisRegion:
    # Committed interval in source coordinates
    start = max(0, nominal + padding)
    end = src_dim if touches_far else min(start + step, src_dim)

    dst_offset = round(start * scale)
    dst_end = round(end * scale)
    if touches_lead and start == 0:
        # No context exists beyond the image border, so nothing is discarded
        src_offset = 0
    else:
        # round(padding * scale) unless the window was shifted back from the far border
        src_offset = dst_offset - round(origin * scale)
    extent = min(dst_end - dst_offset, final_dim - dst_offset)
    overflow = src_offset + extent - patch_dim
    if overflow == 1 and src_offset > 0:
        # Rounding at non-integer scales: shift the source window by one
        #  pixel instead of leaving a one pixel gap in the output
        src_offset -= 1
    elif overflow > 0:
        extent -= overflow
    return _AxisRegion(src_offset, dst_offset, extent)


class SeamCompositor:
    """Computes the committed region of each tile.

    Args:
        src_shape: (H, W) of the source image.
        padding: Effective (pad_h, pad_w) context padding of the scheduler.
        step: Effective (step_h, step_w) of the scheduler.

    For each axis, a tile commits the source interval that starts at
    ``max(0, nominal + padding)`` and is ``step`` long. The last tile on an
    axis, whose extraction window reaches the far border, commits up to the
    border. In patch coordinates, a tile at the leading border starts copying
    at offset 0, an unclamped interior tile at ``round(padding * scale)``.
    Tiles that were shifted back from the far border start correspondingly
    further inside the patch.
    """
    def __init__(
            self,
            src_shape: Tuple[int, int],
            padding: Tuple[int, int],
            step: Tuple[int, int]
    ):
        self.src_shape = tuple(src_shape)
        self.padding = tuple(padding)
        self.step = tuple(step)

    def region(
            self,
            rect: TileRect,
            patch_w: int,
            patch_h: int,
            final_w: int,
            final_h: int
    ) -> Optional[CompositeRegion]:
        """Compute the region of an upscaled patch that is committed to the
        output image.

        ``patch_w`` and ``patch_h`` are the actual output size reported by
        the inference backend; the per-axis scale is derived from them.

        Returns ``None`` if the region is empty.
        """
        src_h, src_w = self.src_shape
        ax = _axis_region(
            nominal=rect.nominal_x, origin=rect.x,
            touches_lead=rect.touches_left, touches_far=rect.touches_right(src_w),
            src_dim=src_w, padding=self.padding[1], step=self.step[1],
            scale=patch_w / rect.w, patch_dim=patch_w, final_dim=final_w
        )
        ay = _axis_region(
            nominal=rect.nominal_y, origin=rect.y,
            touches_lead=rect.touches_top, touches_far=rect.touches_bottom(src_h),
            src_dim=src_h, padding=self.padding[0], step=self.step[0],
            scale=patch_h / rect.h, patch_dim=patch_h, final_dim=final_h
        )
        if ax.extent <= 0 or ay.extent <= 0:
            return None
        return CompositeRegion(
            src=Rect(ax.src_offset, ay.src_offset, ax.extent, ay.extent),
            dst=Rect(ax.dst_offset, ay.dst_offset, ax.extent, ay.extent),
        )


class OutputAssembler:
    """Owns the output image buffer of one upscaling request.

    The buffer is allocated lazily by ``allocate()`` once the first patch
    result reveals the actual scale of the model. Unpainted pixels stay
    fully transparent (all zeros).
    """
    def __init__(self, src_shape: Tuple[int, int]):
        self.src_shape = tuple(src_shape)
        self.buffer: Optional[np.ndarray] = None

    @property
    def allocated(self) -> bool:
        return self.buffer is not None

    @property
    def shape(self) -> Tuple[int, int]:
        if self.buffer is None:
            raise RuntimeError('Output buffer has not been allocated yet.')
        return self.buffer.shape[:2]

    def allocate(self, scale_x: float, scale_y: float) -> Tuple[int, int]:
        """Allocate the output buffer for the observed scale, return its (H, W)."""
        src_h, src_w = self.src_shape
        out_h, out_w = round(src_h * scale_y), round(src_w * scale_x)
        self.buffer = np.zeros((out_h, out_w, 4), dtype=np.uint8)
        logger.debug(f'Allocated output buffer of shape {self.buffer.shape}')
        return out_h, out_w

    def apply(self, region: CompositeRegion, pixels: np.ndarray) -> None:
        src, dst = region.src, region.dst
        self.buffer[dst.y:dst.y + dst.h, dst.x:dst.x + dst.w] = \
            pixels[src.y:src.y + src.h, src.x:src.x + src.w]

    def painted_fraction(self) -> float:
        """Fraction of output pixels that have been written (non-zero alpha)."""
        if self.buffer is None:
            return 0.
        return float(np.count_nonzero(self.buffer[..., 3])) / self.buffer[..., 3].size

    def finalize(self, target_shape: Tuple[int, int]) -> np.ndarray:
        """Hand over the output buffer, resampled to ``target_shape`` (H, W) if
        the model's actual scale differed from the requested one.

        The assembler no longer references the buffer afterwards."""
        out, self.buffer = self.buffer, None
        if out is None:
            raise RuntimeError('No output buffer to finalize.')
        return fit_to_shape(out, target_shape)

    def release(self) -> None:
        self.buffer = None


def fit_to_shape(img: np.ndarray, target_shape: Tuple[int, int]) -> np.ndarray:
    """Resample an RGBA image to ``target_shape`` (H, W) unless it already
    has that shape."""
    target_shape = tuple(target_shape)
    if img.shape[:2] == target_shape:
        return img
    logger.warning(
        f'Model output size {img.shape[:2]} does not match the requested '
        f'size {target_shape}. Resampling the output.'
    )
    resized = skimage.transform.resize(
        img, (*target_shape, img.shape[2]), order=1, mode='edge',
        preserve_range=True, anti_aliasing=False
    )
    return np.round(resized).astype(np.uint8)
