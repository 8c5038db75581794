# tiledsr - Tiled super-resolution inference
#
# Copyright (c) 2024 - now
# tiledsr developers

"""
Input normalization applied to patches before inference.

Transforms map (inp, target) pairs to (transformed_inp, transformed_target)
pairs and operate on ``np.ndarray`` data of shape (C, H, W). ``target`` is
always ``None`` during upscaling and is passed through unchanged. Any callable
with this signature can be passed as ``transform`` to the upscaler.
"""

from typing import Sequence, Tuple, Optional, Callable, Union

import numpy as np

Transform = Callable[
    [np.ndarray, Optional[np.ndarray]],
    Tuple[np.ndarray, Optional[np.ndarray]]
]


class Normalize:
    """Normalizes inputs with supplied per-channel means and stds.

    Args:
        mean: Mean value(s) the model was trained with. Either a sequence
            with one value per channel or a single float that is used for
            every channel.
        std: Standard deviation(s), same format as ``mean``.
        inplace: Apply in-place (works faster, needs less memory but overwrites
            inputs).
    """
    def __init__(
            self,
            mean: Union[Sequence[float], float],
            std: Union[Sequence[float], float],
            inplace: bool = False
    ):
        self.mean = np.array(mean, dtype=np.float32)
        self.std = np.array(std, dtype=np.float32)
        self.inplace = inplace
        if self.mean.ndim == 0:
            self.mean = self.mean[None]
        if self.std.ndim == 0:
            self.std = self.std[None]
        if np.any(self.std == 0):
            raise ValueError(f'std must not contain zeros, got {self.std}.')

    def __call__(
            self,
            inp: np.ndarray,
            target: Optional[np.ndarray] = None  # returned without modifications
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        if self.inplace:
            normalized = inp  # Refer to the same memory space
        else:
            normalized = inp.copy()
        num_channels = inp.shape[0]
        mean = np.broadcast_to(self.mean, (num_channels,)) if self.mean.shape[0] == 1 else self.mean
        std = np.broadcast_to(self.std, (num_channels,)) if self.std.shape[0] == 1 else self.std
        if not num_channels == mean.shape[0] == std.shape[0]:
            raise ValueError('mean and std must have the same length as the C '
                             'axis (number of channels) of the input.')
        for c in range(num_channels):
            normalized[c] = (inp[c] - mean[c]) / std[c]
        return normalized, target

    def __repr__(self):
        return f'Normalize(mean={self.mean}, std={self.std}, inplace={self.inplace})'
