# tiledsr - Tiled super-resolution inference
#
# Copyright (c) 2024 - now
# tiledsr developers

import enum
import logging
import time
from typing import Callable, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from torch import nn
from tqdm import tqdm

from tiledsr.data.image import as_rgba, extract_patch
from tiledsr.data.transforms import Transform
from tiledsr.inference.adapter import InferenceAdapter, InferenceError
from tiledsr.inference.compositing import OutputAssembler, SeamCompositor, fit_to_shape
from tiledsr.inference.tiling import (
    DEFAULT_PADDING, DEFAULT_TILE_SIZE, DIRECT, TileScheduler, resolve_mode
)

logger = logging.getLogger('tiledsrlog')


class FailurePolicy(enum.Enum):
    """What to do if inference fails for one tile."""
    ABORT = 'abort'  # Fail the whole request
    SKIP = 'skip'  # Leave the tile's region unpainted (transparent) and continue


def _target_shape(src_shape: Sequence[int], scale: float) -> Tuple[int, int]:
    return round(src_shape[0] * scale), round(src_shape[1] * scale)


def tiled_upscale(
        adapter: InferenceAdapter,
        image: np.ndarray,
        scale: float,
        tile_shape: Sequence[int],
        padding: int = DEFAULT_PADDING,
        failure_policy: FailurePolicy = FailurePolicy.ABORT,
        cancel=None,
        verbose: bool = False
) -> Optional[np.ndarray]:
    """Upscales an image by running inference on overlapping tiles.

    Each tile is extracted from the source image with ``padding`` pixels of
    context on every side that has a neighbour. After inference, only the
    tile's interior is copied into the output, so the context regions, in
    which the model lacks information about the surroundings, never show up
    as seams. Tiles at the image border have no context to discard on their
    border side and are committed all the way to the edge.

    Tiles are processed one after another in raster order, and every patch
    buffer is released before the next tile is extracted.

    Args:
        adapter: Inference adapter that owns the model.
        image: Source RGBA ``uint8`` image of shape (H, W, 4). It is only read.
        scale: Requested scale factor. The output has the shape
            ``(round(H * scale), round(W * scale), 4)``. The geometry of the
            stitching follows the scale that the model actually produces; if
            that differs from ``scale``, the stitched result is resampled.
        tile_shape: (tile_h, tile_w) input size of the model.
        padding: Context padding in source pixels.
        failure_policy: See :py:class:`FailurePolicy`.
        cancel: Optional cancellation flag with an ``is_set()`` method (e.g.
            ``threading.Event``). It is checked before each tile.
        verbose: If ``True``, a progress bar will be shown while iterating over
            the tiles.

    Returns:
        The upscaled image, or ``None`` if the request failed or was
        cancelled.
    """
    if not scale > 0:
        raise ValueError(f'scale must be positive, got {scale}.')
    src_h, src_w = image.shape[:2]
    scheduler = TileScheduler(tile_shape=tile_shape, padding=padding)
    compositor = SeamCompositor(
        src_shape=(src_h, src_w), padding=scheduler.padding, step=scheduler.step
    )
    assembler = OutputAssembler(src_shape=(src_h, src_w))
    rows, cols = scheduler.grid_shape(src_h, src_w)
    logger.debug(f'Tiling {src_w}x{src_h} image into {rows}x{cols} tiles with {scheduler}')

    # Tiles left unpainted under FailurePolicy.SKIP
    skipped = []
    pbar = tqdm(
        scheduler.tiles(src_h, src_w), 'Upscaling',
        total=rows * cols, disable=not verbose, dynamic_ncols=True
    )
    try:
        for rect in pbar:
            if cancel is not None and cancel.is_set():
                logger.info('Upscaling cancelled.')
                assembler.release()
                return None
            patch = extract_patch(image, rect)
            try:
                result = adapter.infer(patch)
            except InferenceError as e:
                if failure_policy is FailurePolicy.ABORT:
                    logger.error(f'Inference failed for tile {tuple(rect)}, aborting: {e}')
                    assembler.release()
                    return None
                logger.warning(f'Inference failed for tile {tuple(rect)}, leaving it unpainted: {e}')
                skipped.append(rect)
                continue
            finally:
                del patch
            try:
                if not assembler.allocated:
                    assembler.allocate(scale_x=result.width / rect.w, scale_y=result.height / rect.h)
                final_h, final_w = assembler.shape
                region = compositor.region(rect, result.width, result.height, final_w, final_h)
                if region is not None:
                    assembler.apply(region, result.pixels)
            finally:
                del result
    finally:
        pbar.close()

    if not assembler.allocated:
        logger.error('Inference failed for every tile.')
        return None
    if skipped:
        final_h, final_w = assembler.shape
        for rect in skipped:
            # Report the unpainted region using the observed scale
            region = compositor.region(
                rect,
                patch_w=round(rect.w * final_w / src_w),
                patch_h=round(rect.h * final_h / src_h),
                final_w=final_w, final_h=final_h
            )
            if region is not None:
                logger.warning(f'Output region {tuple(region.dst)} (x, y, w, h) is unpainted.')
    return assembler.finalize(_target_shape((src_h, src_w), scale))


class Upscaler:
    """Upscales images of arbitrary size with a super-resolution model.

    If the model accepts inputs of any size, images are fed into it
    directly. If the model declares a fixed input size, images are split
    into overlapping tiles of that size, which are upscaled independently
    and stitched together without seams (see :py:func:`tiled_upscale`).

    Args:
        model: Network model or :py:class:`InferenceAdapter` to be used for
            inference. A model can be passed as a ``torch.nn.Module``, a
            callable or a path to a model file (see
            :py:class:`InferenceAdapter`). The upscaler never looks up a
            model by itself, so the same adapter can be passed to several
            upscalers.
        tile_size_fallback: Tile size that is used if the model declares
            a fixed but non-positive input size.
        context_padding: Number of source pixels by which tiles are extended
            on each side to give the model context. These pixels are
            discarded after inference. Should be close to the receptive
            field of the model and smaller than half the tile size.
        failure_policy: ``'abort'`` (default) to fail the whole request if
            one tile fails, or ``'skip'`` to leave that tile's region
            unpainted.
        input_shape: Declared input shape of the model, (H, W) or
            (N, C, H, W), with ``None`` for dynamic axes. Ignored if
            ``model`` is an :py:class:`InferenceAdapter`.
        device: Device to run the inference on. Ignored if ``model`` is an
            :py:class:`InferenceAdapter`.
        transform: Input normalization. Ignored if ``model`` is an
            :py:class:`InferenceAdapter`.
        verbose: If ``True``, show a progress bar and report upscaling
            speed.

    Examples:
        >>> model = nn.Upsample(scale_factor=2, mode='nearest')
        >>> upscaler = Upscaler(model, input_shape=(64, 64), device='cpu')
        >>> img = np.zeros((100, 150, 4), dtype=np.uint8)
        >>> out = upscaler.upscale(img, scale=2.0)
        >>> out.shape
        (200, 300, 4)
    """
    def __init__(
            self,
            model: Union[InferenceAdapter, nn.Module, Callable[[torch.Tensor], torch.Tensor], str],
            tile_size_fallback: int = DEFAULT_TILE_SIZE,
            context_padding: int = DEFAULT_PADDING,
            failure_policy: Union[FailurePolicy, str] = FailurePolicy.ABORT,
            input_shape: Optional[Sequence] = None,
            device: Optional[Union[torch.device, str]] = None,
            transform: Optional[Transform] = None,
            verbose: bool = False
    ):
        if tile_size_fallback <= 0:
            raise ValueError(f'tile_size_fallback must be positive, got {tile_size_fallback}.')
        if context_padding < 0:
            raise ValueError(f'context_padding must not be negative, got {context_padding}.')
        self.tile_size_fallback = tile_size_fallback
        self.context_padding = context_padding
        self.failure_policy = FailurePolicy(failure_policy)
        self.verbose = verbose
        if isinstance(model, InferenceAdapter):
            self.adapter = model
        else:
            self.adapter = InferenceAdapter(
                model, input_shape=input_shape, device=device, transform=transform
            )
        self.mode, self.tile_shape = resolve_mode(self.adapter.shape_spec, tile_size_fallback)
        logger.debug(f'Upscaler mode: {self.mode}, tile shape: {self.tile_shape}')

    def _direct_upscale(self, image: np.ndarray, scale: float) -> Optional[np.ndarray]:
        try:
            result = self.adapter.infer(image)
        except InferenceError as e:
            logger.error(f'Inference failed for the whole image: {e}')
            return None
        return fit_to_shape(result.pixels, _target_shape(image.shape[:2], scale))

    def upscale(
            self,
            image: np.ndarray,
            scale: float,
            cancel=None
    ) -> Optional[np.ndarray]:
        """Upscale ``image`` by ``scale``.

        Args:
            image: Source image of shape (H, W[, C]). It is converted to
                RGBA ``uint8`` if necessary and never modified.
            scale: Scale factor, must be positive.
            cancel: Optional cancellation flag, see :py:func:`tiled_upscale`.

        Returns:
            RGBA ``uint8`` image of shape
            ``(round(H * scale), round(W * scale), 4)``, or ``None`` if
            upscaling failed.
        """
        if not scale > 0:
            raise ValueError(f'scale must be positive, got {scale}.')
        image = as_rgba(image)
        if image.shape[0] == 0 or image.shape[1] == 0:
            raise ValueError(f'Cannot upscale an empty image of shape {image.shape}.')
        if cancel is not None and cancel.is_set():
            logger.info('Upscaling cancelled.')
            return None
        if self.verbose:
            start = time.time()
        if self.mode == DIRECT:
            out = self._direct_upscale(image, scale)
        else:
            out = tiled_upscale(
                self.adapter,
                image,
                scale=scale,
                tile_shape=self.tile_shape,
                padding=self.context_padding,
                failure_policy=self.failure_policy,
                cancel=cancel,
                verbose=self.verbose
            )
        if self.verbose and out is not None:
            dtime = time.time() - start
            speed = image.shape[0] * image.shape[1] / dtime / 1e6
            logger.info(f'Upscaling speed: {speed:.2f} MPix/s, time: {dtime:.2f}.')
        return out

    def close(self) -> None:
        self.adapter.close()
