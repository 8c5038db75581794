#!/usr/bin/env python3

# tiledsr - Tiled super-resolution inference
#
# Copyright (c) 2024 - now
# tiledsr developers

"""
Upscale an image file with a super-resolution model.

Models with a fixed input size (declared with ``--input-shape``) are applied
to overlapping tiles. Without ``--input-shape`` the whole image is passed to
the model in one step.
"""

import argparse
import logging
import os
import sys

import torch

import tiledsr
from tiledsr.data import load_image, save_image
from tiledsr.data.transforms import Normalize
from tiledsr.inference import FailurePolicy, Upscaler

logger = logging.getLogger('tiledsrlog')

parser = argparse.ArgumentParser(description='Upscale an image with a super-resolution model.')
parser.add_argument('--model', required=True, help='Path to a TorchScript (.pts) or pickled (.pt) model.')
parser.add_argument('--input', required=True, help='Path to the source image.')
parser.add_argument('--output', default=None, help='Output path. Default: Next to the input file.')
parser.add_argument('--scale', type=float, default=4., help='Scale factor of the model.')
parser.add_argument(
    '--input-shape', type=int, nargs=2, default=None, metavar=('H', 'W'),
    help='Fixed input size of the model. Enables tiled inference.'
)
parser.add_argument(
    '--tile-size', type=int, default=512,
    help='Tile size used if --input-shape declares a non-positive size.'
)
parser.add_argument('--padding', type=int, default=12, help='Context padding around tiles (in input pixels).')
parser.add_argument(
    '--on-error', choices=[p.value for p in FailurePolicy], default=FailurePolicy.ABORT.value,
    help='Abort the whole request or leave the tile unpainted if inference fails for a tile.'
)
parser.add_argument(
    '--mean', type=float, nargs='+', default=None,
    help='Input normalization mean (one value or one per RGB channel) the model was trained with.'
)
parser.add_argument('--std', type=float, nargs='+', default=[1.], help='Input normalization std. Only used with --mean.')
parser.add_argument('--disable-cuda', action='store_true', help='Disable CUDA')
parser.add_argument('--verbose', action='store_true', help='Show progress and timing.')
args = parser.parse_args()

if not args.disable_cuda and torch.cuda.is_available():
    device = torch.device('cuda')
else:
    device = torch.device('cpu')
logger.info(f'Running on device: {device}')

inpath = os.path.expanduser(args.input)
outpath = args.output
if outpath is None:
    r, e = os.path.splitext(inpath)
    outpath = f'{r}_x{args.scale:g}{e}'

transform = None
if args.mean is not None:
    transform = Normalize(mean=args.mean, std=args.std)

logger.info(f'tiledsr {tiledsr.__version__}: Loading model from {args.model}...')
upscaler = Upscaler(
    os.path.expanduser(args.model),
    tile_size_fallback=args.tile_size,
    context_padding=args.padding,
    failure_policy=args.on_error,
    input_shape=args.input_shape,
    device=device,
    transform=transform,
    verbose=args.verbose
)

img = load_image(inpath)
logger.info(f'Upscaling {inpath} ({img.shape[1]}x{img.shape[0]}) by {args.scale:g}...')
out = upscaler.upscale(img, scale=args.scale)
upscaler.close()
if out is None:
    logger.error('Upscaling failed, no output was written.')
    sys.exit(1)

save_image(outpath, out)
logger.info(f'Output ({out.shape[1]}x{out.shape[0]}) written to {outpath}')
