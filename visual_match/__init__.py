"""
visual_match — Visual similarity matching for lost and found item photos.

Suggests "this found item might be the one you lost" by comparing a
query photo against candidate item photos with a fixed, deterministic
heuristic (colour histograms, dominant colours, edge density, brightness
and contrast). No model training or inference service is involved.

Modules:
    engine    SimilarityRanker and the rank() entry point
    features  Descriptor extraction from a fixed-size raster
    scoring   Weighted descriptor comparison
    decoding  RasterDecoder interface and the OpenCV implementation
    cache     Optional in-memory descriptor cache
    errors    ExtractionFailure and QueryImageInvalid
    cli       Command line interface
"""

from .engine import CandidateItem, MatchResult, RankStats, SimilarityRanker, rank
from .errors import ExtractionFailure, QueryImageInvalid, VisualMatchError
from .features import ImageDescriptor, extract
from .scoring import score

__version__ = "1.0.0"

__all__ = [
    "CandidateItem",
    "ExtractionFailure",
    "ImageDescriptor",
    "MatchResult",
    "QueryImageInvalid",
    "RankStats",
    "SimilarityRanker",
    "VisualMatchError",
    "extract",
    "rank",
    "score",
]
