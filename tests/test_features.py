"""Tests for descriptor extraction."""

import asyncio

import numpy as np
import pytest

from visual_match.errors import ExtractionFailure
from visual_match.features import (
    DominantColor, compute_brightness, compute_contrast, compute_edge_density,
    extract, extract_color_histogram, extract_descriptor, extract_dominant_colors,
)


class TestColorHistogram:
    """Tests for per-channel histograms."""

    def test_shape_and_counts(self, red_image):
        hist = extract_color_histogram(red_image)
        assert hist.shape == (3, 256)
        assert hist[0, 255] == 64 * 64
        assert hist[1, 0] == 64 * 64
        assert hist[2, 0] == 64 * 64

    def test_each_channel_sums_to_pixel_count(self, noise_image):
        hist = extract_color_histogram(noise_image)
        assert list(hist.sum(axis=1)) == [4096, 4096, 4096]

    def test_read_only(self, red_image):
        hist = extract_color_histogram(red_image)
        with pytest.raises(ValueError):
            hist[0, 0] = 1


class TestDominantColors:
    """Tests for quantized dominant colours."""

    def test_solid_red_bucket_floor(self, red_image):
        colors = extract_dominant_colors(red_image)
        assert colors == (DominantColor(224, 0, 0, 1024),)

    def test_sample_stride_one_counts_every_pixel(self, red_image):
        colors = extract_dominant_colors(red_image, sample_stride=1)
        assert colors[0].count == 4096

    def test_ranked_by_frequency_ties_in_first_seen_order(self, banded_image):
        colors = extract_dominant_colors(banded_image)
        assert [c.rgb for c in colors] == [(224, 0, 0), (0, 224, 0), (0, 0, 224)]
        assert [c.count for c in colors] == [512, 256, 256]

    def test_quantization_floors_to_multiples_of_32(self):
        img = np.zeros((8, 8, 3), dtype=np.uint8)
        img[:, :] = [100, 31, 32]
        colors = extract_dominant_colors(img, sample_stride=1)
        assert colors[0].rgb == (96, 0, 32)

    def test_capped_at_num_colors(self, noise_image):
        assert len(extract_dominant_colors(noise_image)) == 5
        assert len(extract_dominant_colors(noise_image, num_colors=3)) == 3
        assert extract_dominant_colors(noise_image, num_colors=0) == ()

    def test_counts_non_increasing(self, noise_image):
        counts = [c.count for c in extract_dominant_colors(noise_image, num_colors=20)]
        assert counts == sorted(counts, reverse=True)


class TestEdgeDensity:
    """Tests for the interior-pixel edge detector."""

    def test_solid_image_has_no_edges(self, red_image):
        assert compute_edge_density(red_image) == 0.0

    def test_single_vertical_edge(self, split_image):
        # Only column 31 sees a change (to its right neighbour) on each of
        # the 62 interior rows.
        assert compute_edge_density(split_image) == pytest.approx(1 / 62)

    def test_checkerboard_is_all_edges(self, checker_image):
        assert compute_edge_density(checker_image) == 1.0

    def test_threshold_is_strict(self):
        img = np.zeros((8, 8, 3), dtype=np.uint8)
        img[:, 4:] = 30  # brightness step of exactly 30
        assert compute_edge_density(img, threshold=30) == 0.0
        assert compute_edge_density(img, threshold=29) > 0.0

    def test_within_unit_range(self, noise_image):
        assert 0.0 <= compute_edge_density(noise_image) <= 1.0


class TestBrightnessContrast:
    """Tests for brightness and contrast."""

    def test_solid_red(self, red_image):
        assert compute_brightness(red_image) == pytest.approx(85.0)
        assert compute_contrast(red_image) == 0.0

    def test_black_and_white_halves(self, split_image):
        assert compute_brightness(split_image) == pytest.approx(127.5)
        assert compute_contrast(split_image) == pytest.approx(127.5)


class TestExtractDescriptor:
    """Tests for the synchronous descriptor builder."""

    def test_solid_red(self, red_image):
        desc = extract_descriptor(red_image)
        assert desc.side == 64
        assert desc.edge_density == 0.0
        assert desc.contrast == 0.0
        assert desc.dominant_colors[0].rgb == (224, 0, 0)

    def test_deterministic(self, noise_image):
        a = extract_descriptor(noise_image)
        b = extract_descriptor(noise_image.copy())
        assert np.array_equal(a.color_histogram, b.color_histogram)
        assert a.dominant_colors == b.dominant_colors
        assert (a.edge_density, a.brightness, a.contrast) == \
            (b.edge_density, b.brightness, b.contrast)

    def test_rejects_non_square(self):
        with pytest.raises(ValueError, match="square"):
            extract_descriptor(np.zeros((32, 64, 3), dtype=np.uint8))

    def test_rejects_wrong_dtype(self):
        with pytest.raises(ValueError, match="uint8"):
            extract_descriptor(np.zeros((8, 8, 3), dtype=np.float32))

    def test_immutable(self, red_image):
        desc = extract_descriptor(red_image)
        with pytest.raises(AttributeError):
            desc.brightness = 0.0

    def test_summary_is_json_friendly(self, banded_image):
        summary = extract_descriptor(banded_image).summary()
        assert summary["side"] == 64
        assert summary["dominant_colors"][0] == {"r": 224, "g": 0, "b": 0, "count": 512}


class TestExtract:
    """Tests for the async extract() entry point."""

    def test_file_of_any_size_gives_fixed_raster(self, write_image):
        big = np.zeros((96, 128, 3), dtype=np.uint8)
        big[:, :] = [255, 0, 0]
        path = write_image("red.png", big)

        desc = asyncio.run(extract(path))
        assert desc.side == 64
        assert desc.color_histogram[0, 255] == 4096
        assert desc.dominant_colors[0].rgb == (224, 0, 0)

    def test_custom_side(self, red_image):
        desc = asyncio.run(extract(red_image, side=32))
        assert desc.side == 32
        assert desc.color_histogram.sum() == 32 * 32 * 3

    def test_missing_file_raises_extraction_failure(self, tmp_path):
        missing = tmp_path / "nope.jpg"
        with pytest.raises(ExtractionFailure) as exc_info:
            asyncio.run(extract(missing))
        assert isinstance(exc_info.value.cause, FileNotFoundError)
        assert exc_info.value.image_ref == missing

    def test_corrupt_bytes_raise_extraction_failure(self):
        with pytest.raises(ExtractionFailure):
            asyncio.run(extract(b"definitely not an image"))

    def test_unsupported_reference_type(self):
        with pytest.raises(ExtractionFailure) as exc_info:
            asyncio.run(extract(12345))
        assert isinstance(exc_info.value.cause, TypeError)

    def test_timeout_raises_extraction_failure(self, fake_decoder, red_image):
        decoder = fake_decoder({"slow": red_image}, delays={"slow": 5})
        with pytest.raises(ExtractionFailure) as exc_info:
            asyncio.run(extract("slow", decoder=decoder, timeout=0.05))
        assert isinstance(exc_info.value.cause, TimeoutError)

    def test_decoder_timeout_keeps_its_cause(self, fake_decoder):
        read_timeout = asyncio.TimeoutError("socket read timed out")
        decoder = fake_decoder({"stalled": read_timeout})
        with pytest.raises(ExtractionFailure) as exc_info:
            asyncio.run(extract("stalled", decoder=decoder, timeout=5))
        assert exc_info.value.cause is read_timeout
        assert "decode timed out" not in str(exc_info.value)

    def test_decoder_error_is_wrapped(self, fake_decoder):
        decoder = fake_decoder({"bad": OSError("connection reset")})
        with pytest.raises(ExtractionFailure, match="connection reset"):
            asyncio.run(extract("bad", decoder=decoder))
