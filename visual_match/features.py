"""
Visual descriptor extraction for item photos.

An image is decoded into a fixed side x side RGB raster (64x64 by
default) and summarised by five features:
    - color_histogram  — 3 x 256 per-channel intensity counts
    - dominant_colors  — up to N most frequent colours, quantized to 32 levels
    - edge_density     — fraction of interior pixels on a brightness edge
    - brightness       — mean of per-pixel (R + G + B) / 3
    - contrast         — standard deviation of per-pixel brightness

Descriptors are cheap to compute and never persisted; they only exist to
be compared by the scoring module.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .decoding import (
    DEFAULT_DECODE_TIMEOUT, DEFAULT_RASTER_SIDE, OpenCVRasterDecoder, RasterDecoder,
)
from .errors import ExtractionFailure, describe_ref

logger = logging.getLogger(__name__)

DEFAULT_NUM_COLORS = int(os.environ.get("VM_DOMINANT_COLORS", "5"))

# Dominant colours are counted over every Nth pixel in raster order.
DEFAULT_COLOR_SAMPLE_STRIDE = int(os.environ.get("VM_COLOR_SAMPLE_STRIDE", "4"))

# Minimum |dx| + |dy| brightness change (0-255 scale) for an edge pixel
DEFAULT_EDGE_THRESHOLD = float(os.environ.get("VM_EDGE_THRESHOLD", "30"))

QUANTIZATION_STEP = 32
HIST_BINS = 256


@dataclass(frozen=True)
class DominantColor:
    """A quantized colour bucket and how many sampled pixels fell in it."""

    r: int
    g: int
    b: int
    count: int

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return self.r, self.g, self.b


@dataclass(frozen=True, eq=False)
class ImageDescriptor:
    """Compact visual summary of one image. Immutable once built."""

    color_histogram: np.ndarray
    dominant_colors: Tuple[DominantColor, ...]
    edge_density: float
    brightness: float
    contrast: float
    side: int = DEFAULT_RASTER_SIDE

    @property
    def pixel_count(self) -> int:
        return self.side * self.side

    def summary(self) -> dict:
        """JSON-friendly view without the raw histogram."""
        return {
            "side": self.side,
            "brightness": round(self.brightness, 3),
            "contrast": round(self.contrast, 3),
            "edge_density": round(self.edge_density, 4),
            "dominant_colors": [
                {"r": c.r, "g": c.g, "b": c.b, "count": c.count}
                for c in self.dominant_colors
            ],
        }


def extract_color_histogram(pixels: np.ndarray) -> np.ndarray:
    """Return a (3, 256) int64 array of R, G and B intensity counts."""
    flat = pixels.reshape(-1, 3)
    hist = np.stack([
        np.bincount(flat[:, channel], minlength=HIST_BINS)
        for channel in range(3)
    ]).astype(np.int64)
    hist.setflags(write=False)
    return hist


def extract_dominant_colors(pixels: np.ndarray,
                            num_colors: int = DEFAULT_NUM_COLORS,
                            sample_stride: int = DEFAULT_COLOR_SAMPLE_STRIDE
                            ) -> Tuple[DominantColor, ...]:
    """
    Find the most frequent colours after coarse quantization.

    Each channel is floored to a multiple of 32 (8 levels per channel,
    512 buckets overall) and the bucket floor is reported as the colour.
    Buckets with equal counts keep the order in which they were first
    seen while scanning the raster.

    Args:
        pixels: (S, S, 3) uint8 RGB raster.
        num_colors: Maximum number of colours to return.
        sample_stride: Count every Nth pixel in raster order.

    Returns:
        Tuple of DominantColor, most frequent first.
    """
    if num_colors <= 0:
        return ()

    sampled = pixels.reshape(-1, 3)[::max(1, sample_stride)].astype(np.int64)
    levels = HIST_BINS // QUANTIZATION_STEP
    buckets = sampled // QUANTIZATION_STEP
    keys = (buckets[:, 0] * levels + buckets[:, 1]) * levels + buckets[:, 2]

    unique_keys, first_seen, counts = np.unique(
        keys, return_index=True, return_counts=True
    )
    order = np.lexsort((first_seen, -counts))[:num_colors]

    colors = []
    for i in order:
        key = int(unique_keys[i])
        r, rest = divmod(key, levels * levels)
        g, b = divmod(rest, levels)
        colors.append(DominantColor(
            r=r * QUANTIZATION_STEP,
            g=g * QUANTIZATION_STEP,
            b=b * QUANTIZATION_STEP,
            count=int(counts[i]),
        ))
    return tuple(colors)


def pixel_brightness(pixels: np.ndarray) -> np.ndarray:
    """Per-pixel (R + G + B) / 3 as float64."""
    return pixels.astype(np.float64).sum(axis=2) / 3.0


def compute_edge_density(pixels: np.ndarray,
                         threshold: float = DEFAULT_EDGE_THRESHOLD) -> float:
    """
    Fraction of interior pixels that sit on a brightness edge.

    A pixel (excluding the 1-pixel border) is an edge when the absolute
    brightness difference to its right neighbour plus the one to its
    bottom neighbour exceeds the threshold.
    """
    gray = pixel_brightness(pixels)
    h, w = gray.shape
    if h < 3 or w < 3:
        return 0.0

    current = gray[1:-1, 1:-1]
    right = gray[1:-1, 2:]
    bottom = gray[2:, 1:-1]
    strength = np.abs(current - right) + np.abs(current - bottom)

    edges = int(np.count_nonzero(strength > threshold))
    return edges / float((h - 2) * (w - 2))


def compute_brightness(pixels: np.ndarray) -> float:
    return float(pixel_brightness(pixels).mean())


def compute_contrast(pixels: np.ndarray) -> float:
    """Population standard deviation of per-pixel brightness."""
    return float(pixel_brightness(pixels).std())


def extract_descriptor(pixels: np.ndarray,
                       num_colors: int = DEFAULT_NUM_COLORS,
                       sample_stride: int = DEFAULT_COLOR_SAMPLE_STRIDE,
                       edge_threshold: float = DEFAULT_EDGE_THRESHOLD
                       ) -> ImageDescriptor:
    """
    Build a descriptor from an already decoded square raster.

    Args:
        pixels: (S, S, 3) uint8 RGB raster.

    Raises:
        ValueError: If the raster is not square RGB uint8.
    """
    if pixels.ndim != 3 or pixels.shape[2] != 3 or pixels.shape[0] != pixels.shape[1]:
        raise ValueError(f"Expected a square RGB raster, got shape {pixels.shape}")
    if pixels.dtype != np.uint8:
        raise ValueError(f"Expected uint8 pixels, got {pixels.dtype}")

    return ImageDescriptor(
        color_histogram=extract_color_histogram(pixels),
        dominant_colors=extract_dominant_colors(pixels, num_colors, sample_stride),
        edge_density=compute_edge_density(pixels, edge_threshold),
        brightness=compute_brightness(pixels),
        contrast=compute_contrast(pixels),
        side=int(pixels.shape[0]),
    )


_default_decoder: Optional[RasterDecoder] = None


def default_decoder() -> RasterDecoder:
    global _default_decoder
    if _default_decoder is None:
        _default_decoder = OpenCVRasterDecoder()
    return _default_decoder


async def _decode(decoder: RasterDecoder, image_ref, side: int) -> np.ndarray:
    try:
        return await decoder.decode_to_square_raster(image_ref, side)
    except asyncio.TimeoutError as e:
        # A timeout raised by the decoder itself (e.g. a socket read) keeps
        # its own cause instead of being reported as the decode deadline
        raise ExtractionFailure(image_ref, e) from e


async def extract(image_ref,
                  side: int = DEFAULT_RASTER_SIDE,
                  decoder: Optional[RasterDecoder] = None,
                  timeout: Optional[float] = DEFAULT_DECODE_TIMEOUT,
                  num_colors: int = DEFAULT_NUM_COLORS,
                  sample_stride: int = DEFAULT_COLOR_SAMPLE_STRIDE,
                  edge_threshold: float = DEFAULT_EDGE_THRESHOLD
                  ) -> ImageDescriptor:
    """
    Decode an image reference and compute its descriptor.

    Args:
        image_ref: URL, path, encoded bytes, file object or RGB array.
        side: Raster side length used for every descriptor.
        decoder: RasterDecoder to use (OpenCV by default).
        timeout: Seconds allowed for the decode, None for no limit. Network
            I/O stops at the deadline; a decode already running in a
            worker thread is waited out before the failure is raised.

    Returns:
        ImageDescriptor for the image.

    Raises:
        ExtractionFailure: If the image cannot be fetched, decoded or
            analysed, or the decode times out.
    """
    decoder = decoder or default_decoder()

    try:
        decoding = _decode(decoder, image_ref, side)
        if timeout is not None:
            pixels = await asyncio.wait_for(decoding, timeout)
        else:
            pixels = await decoding

        if pixels.shape[:2] != (side, side):
            raise ValueError(
                f"Decoder returned {pixels.shape[:2]}, expected {(side, side)}"
            )
        descriptor = extract_descriptor(pixels, num_colors, sample_stride, edge_threshold)

    except asyncio.TimeoutError as e:
        # Only the overall deadline reaches here; see _decode
        raise ExtractionFailure(
            image_ref, TimeoutError(f"decode timed out after {timeout}s")
        ) from e
    except ExtractionFailure:
        raise
    except Exception as e:
        raise ExtractionFailure(image_ref, e) from e

    logger.debug(
        f"Extracted descriptor for {describe_ref(image_ref)}: "
        f"brightness={descriptor.brightness:.1f} contrast={descriptor.contrast:.1f} "
        f"edges={descriptor.edge_density:.3f}"
    )
    return descriptor
