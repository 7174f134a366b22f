"""
Weighted similarity scoring between two image descriptors.

Five independent comparisons (colour histogram overlap, dominant colour
match, edge density, brightness, contrast) are each normalised to [0, 1]
and combined with a fixed-weight convex combination. The weights live in a
declarative component table so they can be tuned, or components added,
without touching the combination logic.

This is a deliberately simple heuristic: it needs no inference service
and behaves the same way on every machine.
"""

import logging
import math
import os
from dataclasses import dataclass
from typing import Callable, Sequence, Tuple

import numpy as np

from .features import ImageDescriptor

logger = logging.getLogger(__name__)

MAX_RGB_DISTANCE = 255 * math.sqrt(3)

# Floors keep the relative closeness measures away from divide-by-near-zero
EDGE_DENSITY_FLOOR = 0.1
CONTRAST_FLOOR = 1.0


@dataclass(frozen=True)
class SubScore:
    """One named component of a similarity score."""

    name: str
    value: float


@dataclass(frozen=True)
class ScoreComponent:
    """A named comparison and the weight it carries in the final score."""

    name: str
    weight: float
    compare: Callable[[ImageDescriptor, ImageDescriptor], float]


def clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def compare_color_histograms(a: ImageDescriptor, b: ImageDescriptor) -> float:
    """Histogram intersection over all three channels, normalised by S*S*3."""
    overlap = int(np.minimum(a.color_histogram, b.color_histogram).sum())
    return overlap / float(a.pixel_count * 3)


def compare_dominant_colors(a: ImageDescriptor, b: ImageDescriptor) -> float:
    """
    Average, over a's dominant colours, of the best match in b's palette.

    Colour similarity is 1 - euclidean_rgb_distance / (255 * sqrt(3)).
    Only a's palette is iterated, so the result is not guaranteed to be
    symmetric when the palettes differ in size.
    """
    if not a.dominant_colors:
        return 0.0

    total = 0.0
    for color_a in a.dominant_colors:
        best = 0.0
        for color_b in b.dominant_colors:
            distance = math.sqrt(
                (color_a.r - color_b.r) ** 2
                + (color_a.g - color_b.g) ** 2
                + (color_a.b - color_b.b) ** 2
            )
            best = max(best, 1.0 - distance / MAX_RGB_DISTANCE)
        total += best
    return total / len(a.dominant_colors)


def compare_edge_density(a: ImageDescriptor, b: ImageDescriptor) -> float:
    denominator = max(a.edge_density, b.edge_density, EDGE_DENSITY_FLOOR)
    return 1.0 - abs(a.edge_density - b.edge_density) / denominator


def compare_brightness(a: ImageDescriptor, b: ImageDescriptor) -> float:
    return 1.0 - abs(a.brightness - b.brightness) / 255.0


def compare_contrast(a: ImageDescriptor, b: ImageDescriptor) -> float:
    denominator = max(a.contrast, b.contrast, CONTRAST_FLOOR)
    return 1.0 - abs(a.contrast - b.contrast) / denominator


# Scoring weights can be tuned from the environment; the final score is
# divided by their sum, so they do not have to add up to exactly 1.0.
DEFAULT_COMPONENTS: Tuple[ScoreComponent, ...] = (
    ScoreComponent("color_histogram",
                   float(os.environ.get("VM_SCORE_HIST_W", "0.30")),
                   compare_color_histograms),
    ScoreComponent("dominant_colors",
                   float(os.environ.get("VM_SCORE_DOMINANT_W", "0.25")),
                   compare_dominant_colors),
    ScoreComponent("edge_density",
                   float(os.environ.get("VM_SCORE_EDGE_W", "0.20")),
                   compare_edge_density),
    ScoreComponent("brightness",
                   float(os.environ.get("VM_SCORE_BRIGHT_W", "0.15")),
                   compare_brightness),
    ScoreComponent("contrast",
                   float(os.environ.get("VM_SCORE_CONTRAST_W", "0.10")),
                   compare_contrast),
)


def score_with_breakdown(a: ImageDescriptor,
                         b: ImageDescriptor,
                         components: Sequence[ScoreComponent] = DEFAULT_COMPONENTS
                         ) -> Tuple[float, Tuple[SubScore, ...]]:
    """
    Compare two descriptors and return the score with its sub-scores.

    Args:
        a: Query descriptor (its palette drives the dominant colour match).
        b: Candidate descriptor.
        components: Weighted comparison table.

    Returns:
        Tuple of (similarity in [0, 1], per-component SubScores).

    Raises:
        ValueError: If the descriptors come from different raster sizes or
            the component weights do not sum to a positive value.
    """
    if a.side != b.side:
        raise ValueError(
            f"Descriptors are not comparable: raster sides {a.side} and {b.side}"
        )

    total_weight = sum(c.weight for c in components)
    if total_weight <= 0:
        raise ValueError("Score component weights must sum to a positive value")

    sub_scores = tuple(
        SubScore(c.name, clamp01(c.compare(a, b))) for c in components
    )
    weighted = sum(c.weight * s.value for c, s in zip(components, sub_scores))

    return clamp01(weighted / total_weight), sub_scores


def score(a: ImageDescriptor,
          b: ImageDescriptor,
          components: Sequence[ScoreComponent] = DEFAULT_COMPONENTS) -> float:
    """Similarity of two descriptors in [0, 1]."""
    similarity, _ = score_with_breakdown(a, b, components)
    return similarity


def confidence_bucket(similarity: float, sub_scores: Sequence[SubScore]) -> str:
    """
    Coarse high / medium / low label for display next to a match.

    Combines the overall similarity with the mean of the sub-scores so a
    score carried by a single strong component is not labelled "high".
    """
    if not sub_scores:
        return "low"
    mean_sub = sum(s.value for s in sub_scores) / len(sub_scores)

    if similarity > 0.7 and mean_sub > 0.6:
        return "high"
    if similarity > 0.5 and mean_sub > 0.4:
        return "medium"
    return "low"
