"""Shared test fixtures for visual matching tests."""

import asyncio

import cv2
import numpy as np
import pytest

from visual_match.decoding import RasterDecoder, resample_square


def solid(color, size=64):
    img = np.zeros((size, size, 3), dtype=np.uint8)
    img[:, :] = color
    return img


@pytest.fixture
def red_image():
    """64x64 solid red."""
    return solid((255, 0, 0))


@pytest.fixture
def blue_image():
    """64x64 solid blue."""
    return solid((0, 0, 255))


@pytest.fixture
def split_image():
    """Left half black, right half white."""
    img = np.zeros((64, 64, 3), dtype=np.uint8)
    img[:, 32:] = 255
    return img


@pytest.fixture
def banded_image():
    """Red top half, green third quarter, blue bottom quarter."""
    img = np.zeros((64, 64, 3), dtype=np.uint8)
    img[:32] = [255, 0, 0]
    img[32:48] = [0, 255, 0]
    img[48:] = [0, 0, 255]
    return img


@pytest.fixture
def checker_image():
    """Pixel-level black/white checkerboard."""
    yy, xx = np.indices((64, 64))
    img = np.zeros((64, 64, 3), dtype=np.uint8)
    img[(yy + xx) % 2 == 1] = 255
    return img


@pytest.fixture
def noise_image():
    """Generate a 64x64 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 256, (64, 64, 3), dtype=np.uint8)


@pytest.fixture
def write_image(tmp_path):
    """Write an RGB array to a PNG file under tmp_path and return its path."""
    def _write(name, image_rgb):
        path = tmp_path / name
        cv2.imwrite(str(path), cv2.cvtColor(image_rgb, cv2.COLOR_RGB2BGR))
        return path
    return _write


class FakeDecoder(RasterDecoder):
    """
    In-memory decoder keyed by reference string.

    Values are RGB arrays or exceptions to raise. Unknown references raise
    KeyError. Tracks how many decodes are in flight at once.
    """

    def __init__(self, images, delays=None):
        self.images = images
        self.delays = delays or {}
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def decode_to_square_raster(self, image_ref, side):
        self.calls.append(image_ref)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(image_ref, 0))
            image = self.images[image_ref]
            if isinstance(image, Exception):
                raise image
            return resample_square(image, side)
        finally:
            self.in_flight -= 1


@pytest.fixture
def fake_decoder():
    """Factory for FakeDecoder instances."""
    return FakeDecoder
