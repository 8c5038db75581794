# tiledsr - Tiled super-resolution inference
#
# Copyright (c) 2024 - now
# tiledsr developers

"""Boundary between RGBA image patches and the inference backend.

The backend is treated as a black box: a callable that maps a float tensor of
shape (1, 3, H, W) to an output tensor of rank 3 (C, H', W') or rank 4
(N, C, H', W'). Nothing here assumes that H' and W' are integer multiples of
H and W; the output size is always read from the returned tensor.
"""

import logging
import os
import threading
import zipfile
from typing import Callable, NamedTuple, Optional, Sequence, Union

import numpy as np
import torch
import torch.nn.functional as F
from torch import nn

from tiledsr.data.transforms import Transform
from tiledsr.inference.tiling import ShapeSpec

logger = logging.getLogger('tiledsrlog')


class InferenceError(RuntimeError):
    """Inference failed for one input patch."""


class UnsupportedRankError(InferenceError):
    """The backend returned a tensor that is neither rank 3 nor rank 4."""


class Rank3Shape(NamedTuple):
    c: int
    h: int
    w: int


class Rank4Shape(NamedTuple):
    b: int
    c: int
    h: int
    w: int


OutputShape = Union[Rank3Shape, Rank4Shape]


def output_shape_of(out: torch.Tensor) -> OutputShape:
    """Classify the shape of a backend result.

    >>> output_shape_of(torch.zeros(3, 8, 6))
    Rank3Shape(c=3, h=8, w=6)
    """
    shape = tuple(out.shape)
    if len(shape) == 3:
        return Rank3Shape(*shape)
    if len(shape) == 4:
        return Rank4Shape(*shape)
    raise UnsupportedRankError(
        f'Unsupported output rank {len(shape)} (shape {shape}). '
        'Expected (C, H, W) or (N, C, H, W).'
    )


def normalize_rank(out: torch.Tensor, shape: OutputShape) -> torch.Tensor:
    """Return ``out`` as a rank-4 tensor, inserting a unit batch axis for
    rank-3 results."""
    if isinstance(shape, Rank3Shape):
        return out.unsqueeze(0)
    return out


class PatchResult(NamedTuple):
    pixels: np.ndarray  # (height, width, 4) uint8
    width: int
    height: int


def load_model(path: str, device: torch.device) -> nn.Module:
    """Load a TorchScript (.pts) or pickled (.pt) model file."""
    if not os.path.isfile(path):
        raise ValueError(f'Model path {path} not found.')
    # TorchScript serialization can be identified by checking if
    #  it's a zip file. Pickled Python models are not zip files.
    if zipfile.is_zipfile(path):
        try:
            return torch.jit.load(path, map_location=device)
        except RuntimeError:
            # Zip archive, but no TorchScript: regular torch.save() output
            pass
    return torch.load(path, map_location=device, weights_only=False)


class InferenceAdapter:
    """Runs a super-resolution model on single RGBA image patches.

    Args:
        model: The inference backend. Can be a ``torch.nn.Module``, any
            callable that maps a (1, 3, H, W) float tensor to a rank 3 or 4
            tensor, or a path to a TorchScript (.pts) or pickled (.pt)
            model file, which is loaded and mapped to ``device``.
        input_shape: Declared input shape of the model, either (H, W) or
            (N, C, H, W). Axes given as ``None`` or as a name (``str``) are
            dynamic. If ``None`` (default), the model is assumed to accept
            inputs of any size.
        device: Device to run the inference on. If not specified (``None``),
            CUDA is used if available, with the CPU as a fallback.
        transform: Transformation applied to each (C, H, W) input patch
            (values in [0, 1]) before it is passed to the model, e.g.
            :py:class:`tiledsr.data.transforms.Normalize`.

    The adapter keeps exclusive ownership of the model handle. Calls to
    ``infer()`` are serialized with a lock, so one adapter can be shared by
    several threads. Call ``close()`` (or use the adapter as a context
    manager) to release the model.
    """
    def __init__(
            self,
            model: Union[nn.Module, Callable[[torch.Tensor], torch.Tensor], str],
            input_shape: Optional[Sequence] = None,
            device: Optional[Union[torch.device, str]] = None,
            transform: Optional[Transform] = None
    ):
        if device is None:
            device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
            logger.info(f'Running on device {device}')
        elif isinstance(device, str):
            device = torch.device(device)
        self.device = device
        if isinstance(model, str):
            model = load_model(model, device)
        if isinstance(model, nn.Module):
            model.to(device)
            model.eval()
        self.model = model
        self.shape_spec = ShapeSpec.from_dims(input_shape)
        self.transform = transform
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self) -> None:
        self.model = None
        if self.device.type == 'cuda':
            torch.cuda.empty_cache()

    def _to_tensor(self, patch: np.ndarray) -> torch.Tensor:
        inp = patch[..., :3].transpose(2, 0, 1).astype(np.float32) / 255.  # (3, H, W)
        if self.transform is not None:
            inp, _ = self.transform(inp, None)
        return torch.as_tensor(np.ascontiguousarray(inp))[None]  # (1, 3, H, W)

    def _pad_to_fixed(self, inp: torch.Tensor):
        """Pad the bottom/right of ``inp`` up to the fixed model input size.

        Returns the padded tensor and the padded (H, W)."""
        h, w = inp.shape[2:]
        pad_h = max((self.shape_spec.height or h) - h, 0)
        pad_w = max((self.shape_spec.width or w) - w, 0)
        if pad_h == 0 and pad_w == 0:
            return inp, (h, w)
        inp = F.pad(inp, (0, pad_w, 0, pad_h), mode='replicate')
        return inp, (h + pad_h, w + pad_w)

    @torch.no_grad()
    def _run(self, inp: torch.Tensor) -> torch.Tensor:
        with self._lock:
            if self.model is None:
                raise InferenceError('Inference adapter has already been closed.')
            try:
                out = self.model(inp.to(self.device))
                if not isinstance(out, torch.Tensor):
                    out = torch.as_tensor(np.asarray(out))
            except Exception as e:  # Any backend error fails only this patch
                raise InferenceError(
                    f'Inference failed for input of shape {tuple(inp.shape)}: '
                    f'{type(e).__name__}: {e}'
                ) from e
        return out

    def infer(self, patch: np.ndarray) -> PatchResult:
        """Upscale one RGBA ``uint8`` patch of shape (H, W, 4).

        Raises:
            InferenceError: If the backend fails or returns an unusable
                result for this patch.
        """
        h, w = patch.shape[:2]
        inp = self._to_tensor(patch)
        inp, (padded_h, padded_w) = self._pad_to_fixed(inp)
        out = self._run(inp)

        shape = output_shape_of(out)
        out = normalize_rank(out, shape)
        if out.shape[0] > 1:
            logger.debug(f'Model returned batch size {out.shape[0]}, using the first sample.')
        out = out[0].float().cpu()  # (C, H', W')
        if out.shape[0] == 1:
            out = out.expand(3, -1, -1)
        elif out.shape[0] < 3:
            raise InferenceError(f'Model output has {out.shape[0]} channels, expected 1 or >= 3.')
        out = out[:3]

        if (padded_h, padded_w) != (h, w):
            # Crop away the output region that belongs to the padding
            out_h = round(h * out.shape[1] / padded_h)
            out_w = round(w * out.shape[2] / padded_w)
            out = out[:, :out_h, :out_w]

        out_h, out_w = out.shape[1:]
        if out_h == 0 or out_w == 0:
            raise InferenceError(f'Model returned an empty output of shape {tuple(out.shape)}.')
        rgb = torch.round(out.clamp(0., 1.) * 255).to(torch.uint8).permute(1, 2, 0).numpy()
        pixels = np.empty((out_h, out_w, 4), dtype=np.uint8)
        pixels[..., :3] = rgb
        pixels[..., 3] = 255
        return PatchResult(pixels=pixels, width=out_w, height=out_h)
