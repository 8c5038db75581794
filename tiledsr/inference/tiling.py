# tiledsr - Tiled super-resolution inference
#
# Copyright (c) 2024 - now
# tiledsr developers

"""Operating mode selection and tile grid generation.

``resolve_mode()`` decides from the model's declared input shape whether an
image can be upscaled in one inference call (*direct* mode) or has to be split
into overlapping tiles (*tiled* mode).

``TileScheduler`` generates the tile grid for tiled mode. It is stateless:
the same source shape always produces the same sequence of tiles, and every
call to ``tiles()`` starts a fresh iteration.

Geometry along one axis, with tile size ``T``, context padding ``p`` and step
``s = T - 2 * p``::

    nominal origin   -p      -p + s      -p + 2s  ...
    committed        [0, s)  [s, 2s)     [2s, 3s) ...

Each tile's extraction window starts at its nominal origin clamped into
``[0, D - T]``, so every window is a full ``T`` pixels wide (or the whole
axis if the source is smaller than ``T``). Windows near the far border
overlap their neighbour by more than ``2 * p``; the compositor only ever
commits each tile's interval, so destination pixels are still written once.
"""

import logging
import math
from typing import Iterator, NamedTuple, Optional, Sequence, Tuple, Union

logger = logging.getLogger('tiledsrlog')

DEFAULT_TILE_SIZE = 512
DEFAULT_PADDING = 12

DIRECT = 'direct'
TILED = 'tiled'


class ShapeSpec(NamedTuple):
    """Declared spatial input size of a model.

    Each axis is either a fixed ``int`` or ``None`` for a dynamic axis that
    accepts any size. Fixed values are not validated here; a non-positive
    value is corrected by ``resolve_mode()``."""
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def is_dynamic(self) -> bool:
        return self.width is None and self.height is None

    @classmethod
    def from_dims(cls, dims: Optional[Sequence]) -> 'ShapeSpec':
        """Build a ``ShapeSpec`` from a declared input shape.

        ``dims`` may be ``None`` (fully dynamic), ``(H, W)`` or
        ``(N, C, H, W)``. An axis given as ``None`` or as a symbolic name
        (``str``, as exported by e.g. ONNX) is dynamic.

        >>> ShapeSpec.from_dims((1, 3, 'height', 512))
        ShapeSpec(width=512, height=None)
        """
        if dims is None:
            return cls()
        dims = list(dims)
        if len(dims) == 4:
            dims = dims[2:]
        if len(dims) != 2:
            raise ValueError(f'Expected input dims (H, W) or (N, C, H, W), got {dims}.')

        def _axis(d):
            if d is None or isinstance(d, str):
                return None
            return int(d)

        h, w = dims
        return cls(width=_axis(w), height=_axis(h))


class ModeDecision(NamedTuple):
    mode: str
    tile_shape: Optional[Tuple[int, int]]  # (tile_h, tile_w), None in direct mode


def resolve_mode(
        shape_spec: ShapeSpec,
        tile_size_fallback: int = DEFAULT_TILE_SIZE
) -> ModeDecision:
    """Choose between direct and tiled inference.

    If both axes of ``shape_spec`` are dynamic, the whole image is passed to
    the model at once. Otherwise tiles are used. A fixed axis with a
    non-positive size is treated as unreliable model metadata and silently
    replaced by ``tile_size_fallback``. A dynamic axis next to a fixed one
    uses the same size as the fixed axis, so tiles stay square.
    """
    if shape_spec.is_dynamic:
        return ModeDecision(DIRECT, None)

    def _fixed(value):
        if value is None:
            return None
        if value <= 0:
            logger.debug(
                f'Model declares a non-positive input size ({value}), '
                f'using tile size {tile_size_fallback} instead.'
            )
            return tile_size_fallback
        return value

    tile_w = _fixed(shape_spec.width)
    tile_h = _fixed(shape_spec.height)
    if tile_w is None:
        tile_w = tile_h
    if tile_h is None:
        tile_h = tile_w
    return ModeDecision(TILED, (tile_h, tile_w))


class TileRect(NamedTuple):
    """Extraction window of one tile in source image coordinates.

    ``x, y`` is the clamped origin that is actually read from the source,
    ``nominal_x, nominal_y`` is the unclamped grid position (which is
    negative for the first tile on an axis)."""
    x: int
    y: int
    w: int
    h: int
    nominal_x: int
    nominal_y: int

    @property
    def touches_left(self) -> bool:
        return self.x == 0

    @property
    def touches_top(self) -> bool:
        return self.y == 0

    def touches_right(self, src_w: int) -> bool:
        return self.x + self.w >= src_w

    def touches_bottom(self, src_h: int) -> bool:
        return self.y + self.h >= src_h


def _axis_step(tile: int, padding: int) -> Tuple[int, int]:
    """Return (step, effective_padding) for one axis."""
    step = tile - 2 * padding
    if step <= 0:
        step = max(tile // 2, 1)
        eff_padding = (tile - step) // 2
        logger.info(
            f'Context padding {padding} leaves no interior in tiles of size '
            f'{tile}. Falling back to step {step} and padding {eff_padding}.'
        )
        return step, eff_padding
    return step, padding


def _axis_positions(src: int, tile: int, step: int, padding: int) -> Iterator[Tuple[int, int, int]]:
    """Yield (nominal, origin, extent) for every tile along one axis.

    Stops after the first tile whose extraction window reaches the far
    border, which happens after at most ``ceil(src / step)`` tiles."""
    extent = min(tile, src)
    max_origin = src - extent
    for k in range(math.ceil(src / step)):
        nominal = k * step - padding
        origin = min(max(nominal, 0), max_origin)
        yield nominal, origin, extent
        if origin + extent >= src:
            return


class TileScheduler:
    """Generates overlapping tiles that cover a source image.

    Args:
        tile_shape: (tile_h, tile_w) size of the model input. An ``int`` is
            used for both axes.
        padding: Context padding in source pixels that is added around the
            committed interior of each tile and later discarded. Must be
            smaller than half the tile size; otherwise the step falls back
            to half the tile size (see ``_axis_step()``).

    Example:
        >>> scheduler = TileScheduler(tile_shape=512, padding=12)
        >>> scheduler.grid_shape(src_h=700, src_w=1000)
        (2, 3)
    """
    def __init__(
            self,
            tile_shape: Union[int, Sequence[int]] = DEFAULT_TILE_SIZE,
            padding: int = DEFAULT_PADDING
    ):
        if isinstance(tile_shape, int):
            tile_shape = (tile_shape, tile_shape)
        tile_h, tile_w = (int(t) for t in tile_shape)
        if tile_h <= 0 or tile_w <= 0:
            raise ValueError(f'tile_shape must be positive, got {tile_shape}.')
        if padding < 0:
            raise ValueError(f'padding must not be negative, got {padding}.')
        self.tile_shape = (tile_h, tile_w)
        step_h, pad_h = _axis_step(tile_h, padding)
        step_w, pad_w = _axis_step(tile_w, padding)
        self.step = (step_h, step_w)
        self.padding = (pad_h, pad_w)

    def tiles(self, src_h: int, src_w: int) -> Iterator[TileRect]:
        """Lazily generate tiles in raster order (top to bottom, then left
        to right within each row)."""
        if src_h <= 0 or src_w <= 0:
            raise ValueError(f'Source image must not be empty, got h={src_h}, w={src_w}.')
        for ny, y, h in _axis_positions(src_h, self.tile_shape[0], self.step[0], self.padding[0]):
            for nx, x, w in _axis_positions(src_w, self.tile_shape[1], self.step[1], self.padding[1]):
                yield TileRect(x=x, y=y, w=w, h=h, nominal_x=nx, nominal_y=ny)

    def grid_shape(self, src_h: int, src_w: int) -> Tuple[int, int]:
        rows = sum(1 for _ in _axis_positions(src_h, self.tile_shape[0], self.step[0], self.padding[0]))
        cols = sum(1 for _ in _axis_positions(src_w, self.tile_shape[1], self.step[1], self.padding[1]))
        return rows, cols

    def __repr__(self):
        return (f'TileScheduler(tile_shape={self.tile_shape}, '
                f'step={self.step}, padding={self.padding})')
