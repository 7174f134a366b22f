"""
Image decoding into fixed-size square rasters.

Every descriptor is computed from a side x side RGB raster regardless of
the source image's native size or aspect ratio. The decode step is the
only platform-specific part of feature extraction, so it sits behind the
RasterDecoder interface; OpenCVRasterDecoder is the default.

Accepted image references:
    - numpy arrays (RGB, RGBA or grayscale; any numeric dtype)
    - bytes / bytearray / memoryview holding an encoded image
    - file-like objects with a read() method
    - http(s) URLs (fetched with aiohttp)
    - data: URIs with base64 payloads
    - local filesystem paths (str or os.PathLike)
"""

import asyncio
import base64
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp
import cv2
import numpy as np

from .errors import describe_ref

logger = logging.getLogger(__name__)

# Side length of the comparison raster. 64x64 keeps extraction fast enough
# for a synchronous upload flow while leaving enough detail for the features.
DEFAULT_RASTER_SIDE = int(os.environ.get("VM_RASTER_SIDE", "64"))

# Upper bound for a single fetch + decode, in seconds. A slow remote image
# must not stall a whole ranking batch.
DEFAULT_DECODE_TIMEOUT = float(os.environ.get("VM_DECODE_TIMEOUT", "10.0"))

REMOTE_SCHEMES = ("http://", "https://")


class RasterDecoder(ABC):
    """Capability that turns an image reference into a square RGB raster."""

    @abstractmethod
    async def decode_to_square_raster(self, image_ref, side: int) -> np.ndarray:
        """
        Decode image_ref and resample it to a (side, side, 3) uint8 RGB array.

        Raises any exception on failure; callers wrap it into an
        ExtractionFailure.
        """


class OpenCVRasterDecoder(RasterDecoder):
    """
    Default decoder built on OpenCV.

    Remote references are downloaded with aiohttp. Decoding and resampling
    are CPU-bound and run in a worker thread so the event loop is never
    blocked. Each call allocates its own buffers; nothing is shared between
    concurrent decodes.
    """

    def __init__(self,
                 session: Optional[aiohttp.ClientSession] = None,
                 interpolation: int = cv2.INTER_AREA):
        """
        Args:
            session: Optional shared aiohttp session for remote references.
                A short-lived session is opened per fetch when omitted.
            interpolation: OpenCV interpolation flag used for resampling.
        """
        self.session = session
        self.interpolation = interpolation

    async def decode_to_square_raster(self, image_ref, side: int) -> np.ndarray:
        if isinstance(image_ref, str) and image_ref.startswith(REMOTE_SCHEMES):
            data = await self.fetch(image_ref)
            return await run_blocking(self._decode_bytes, data, side)
        return await run_blocking(self.decode_local, image_ref, side)

    async def fetch(self, url: str) -> bytes:
        """Download the raw bytes of a remote image."""
        if self.session is not None:
            return await _read_url(self.session, url)
        async with aiohttp.ClientSession() as session:
            return await _read_url(session, url)

    def decode_local(self, image_ref, side: int) -> np.ndarray:
        """Synchronously decode a non-remote reference."""
        if isinstance(image_ref, np.ndarray):
            return resample_square(to_rgb(image_ref), side, self.interpolation)

        if isinstance(image_ref, (bytes, bytearray, memoryview)):
            return self._decode_bytes(bytes(image_ref), side)

        if hasattr(image_ref, "read"):
            return self._decode_bytes(image_ref.read(), side)

        if isinstance(image_ref, str) and image_ref.startswith("data:"):
            return self._decode_bytes(_decode_data_uri(image_ref), side)

        if isinstance(image_ref, (str, os.PathLike)):
            path = os.fspath(image_ref)
            if not os.path.isfile(path):
                raise FileNotFoundError(f"No such image file: {path}")
            image = cv2.imread(path, cv2.IMREAD_COLOR)
            if image is None:
                raise ValueError(f"Could not decode image file: {path}")
            image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
            return resample_square(image_rgb, side, self.interpolation)

        raise TypeError(
            f"Unsupported image reference type: {type(image_ref).__name__}"
        )

    def _decode_bytes(self, data: bytes, side: int) -> np.ndarray:
        if not data:
            raise ValueError("Empty image data")
        buffer = np.frombuffer(data, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if image is None:
            raise ValueError("Could not decode image data")
        image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        return resample_square(image_rgb, side, self.interpolation)


async def run_blocking(func, *args):
    """
    Run a blocking call in a worker thread and return its result.

    A running thread cannot be interrupted. If the awaiting task is
    cancelled (for example by a decode timeout) this keeps waiting until
    func returns and only then re-raises CancelledError, so a caller that
    holds a concurrency slot keeps it for as long as the raster is alive.
    """
    work = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(work)
    except asyncio.CancelledError:
        while not work.done():
            try:
                await asyncio.wait({work})
            except asyncio.CancelledError:
                continue
        raise


async def _read_url(session: aiohttp.ClientSession, url: str) -> bytes:
    async with session.get(url) as response:
        if response.status != 200:
            raise ValueError(f"HTTP {response.status} fetching {describe_ref(url)}")
        data = await response.read()
    logger.debug(f"Fetched {len(data)} bytes from {describe_ref(url)}")
    return data


def _decode_data_uri(uri: str) -> bytes:
    header, sep, payload = uri.partition(",")
    if not sep or ";base64" not in header:
        raise ValueError("Only base64 data URIs are supported")
    return base64.b64decode(payload)


def to_rgb(image_np: np.ndarray) -> np.ndarray:
    """Coerce an array to uint8 RGB with three channels."""
    if image_np.size == 0:
        raise ValueError("Empty image array")

    if image_np.dtype != np.uint8:
        if np.issubdtype(image_np.dtype, np.floating) and image_np.max() <= 1.0:
            image_np = (image_np * 255).round()
        image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        return cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    if image_np.ndim == 3 and image_np.shape[2] == 1:
        return cv2.cvtColor(image_np[:, :, 0], cv2.COLOR_GRAY2RGB)
    if image_np.ndim == 3 and image_np.shape[2] == 4:
        return cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)
    if image_np.ndim == 3 and image_np.shape[2] == 3:
        return image_np
    raise ValueError(f"Unsupported image array shape {image_np.shape}")


def resample_square(image_rgb: np.ndarray, side: int,
                    interpolation: int = cv2.INTER_AREA) -> np.ndarray:
    """Stretch an RGB image to side x side, ignoring aspect ratio."""
    if side < 3:
        raise ValueError(f"Raster side must be at least 3, got {side}")
    h, w = image_rgb.shape[:2]
    if (h, w) == (side, side):
        return np.ascontiguousarray(image_rgb)
    return cv2.resize(image_rgb, (side, side), interpolation=interpolation)
