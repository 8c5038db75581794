"""Tiled super-resolution inference on images of arbitrary size.

Models with a fixed input size are applied to overlapping tiles whose
upscaled interiors are stitched together without seams. Models that accept
any input size are applied to the whole image at once.

The inference backend is only accessed through
:py:class:`tiledsr.inference.adapter.InferenceAdapter`, so any
``Callable[[torch.Tensor], torch.Tensor]`` that maps (1, 3, H, W) inputs to
(N, C, H', W') or (C, H', W') outputs can be used as a model.
"""

from .adapter import InferenceAdapter, InferenceError, UnsupportedRankError, PatchResult
from .compositing import CompositeRegion, OutputAssembler, SeamCompositor
from .inference import FailurePolicy, Upscaler, tiled_upscale
from .tiling import ShapeSpec, TileRect, TileScheduler, resolve_mode
