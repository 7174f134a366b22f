"""
Similar-item ranking.

Given a query photo and a list of candidate items supplied by the
application (already filtered by status, lost/found type, category and
ownership), scores each candidate's primary photo against the query and
returns the best matches:
    1. Extract the query descriptor (fatal if it fails)
    2. Extract candidate descriptors concurrently, bounded and timed out
    3. Score, drop anything under the threshold
    4. Stable sort by similarity, truncate to the limit

A candidate whose photo cannot be fetched or decoded is skipped; one bad
image never aborts the batch.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from .cache import DescriptorCache, fingerprint
from .decoding import DEFAULT_DECODE_TIMEOUT, DEFAULT_RASTER_SIDE, RasterDecoder
from .errors import ExtractionFailure, QueryImageInvalid, describe_ref
from .features import (
    DEFAULT_COLOR_SAMPLE_STRIDE, DEFAULT_EDGE_THRESHOLD, DEFAULT_NUM_COLORS,
    ImageDescriptor, extract,
)
from .scoring import (
    DEFAULT_COMPONENTS, ScoreComponent, SubScore, confidence_bucket, score_with_breakdown,
)

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = float(os.environ.get("VM_SIMILARITY_THRESHOLD", "0.3"))

# Page size of the "similar items" panel
DEFAULT_RESULT_LIMIT = int(os.environ.get("VM_RESULT_LIMIT", "6"))

# Bounds the number of rasters held in memory at once
DEFAULT_MAX_CONCURRENCY = int(os.environ.get("VM_MAX_CONCURRENCY", "6"))


@dataclass(frozen=True)
class CandidateItem:
    """
    An item record to compare against the query photo.

    Only image_refs is read by the matcher; tags and payload are carried
    through untouched for the caller.
    """

    item_id: Any
    image_refs: Tuple[Any, ...] = ()
    tags: Mapping[str, Any] = field(default_factory=dict)
    payload: Any = None

    def __post_init__(self):
        if not isinstance(self.image_refs, tuple):
            object.__setattr__(self, "image_refs", tuple(self.image_refs))

    @property
    def primary_image(self):
        return self.image_refs[0] if self.image_refs else None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "CandidateItem":
        """
        Build a candidate from an item document.

        Accepts an id under '_id' or 'id' and images as either plain URLs
        or mappings with a 'url' key. 'type' and 'category' become tags.
        """
        images = []
        for image in record.get("images") or []:
            url = image.get("url") if isinstance(image, Mapping) else image
            if url:
                images.append(url)

        tags = {k: record[k] for k in ("type", "category") if k in record}
        item_id = record.get("_id", record.get("id"))
        return cls(item_id=item_id, image_refs=tuple(images), tags=tags, payload=record)


@dataclass(frozen=True)
class MatchResult:
    """A candidate that cleared the similarity threshold."""

    candidate: CandidateItem
    similarity: float
    matched_image_ref: Any
    sub_scores: Tuple[SubScore, ...] = ()

    @property
    def similarity_percent(self) -> int:
        return int(round(self.similarity * 100))

    @property
    def confidence(self) -> str:
        return confidence_bucket(self.similarity, self.sub_scores)

    def to_dict(self) -> dict:
        matched = self.matched_image_ref
        return {
            "item_id": self.candidate.item_id,
            "similarity": round(self.similarity, 4),
            "similarity_percent": self.similarity_percent,
            "confidence": self.confidence,
            "matched_image": matched if isinstance(matched, str) else describe_ref(matched),
            "sub_scores": [
                {"name": s.name, "value": round(s.value, 4)} for s in self.sub_scores
            ],
            "item": self.candidate.payload,
        }


@dataclass
class RankStats:
    """Counters for one rank() call."""

    candidates: int = 0
    extracted: int = 0
    skipped_no_image: int = 0
    failed: int = 0
    matched: int = 0
    returned: int = 0


class SimilarityRanker:
    """
    Ranks candidate items by visual similarity to a query photo.

    Holds configuration only. Every rank() call builds its own semaphore,
    tasks and RankStats, so one ranker can serve concurrent requests.
    last_stats is a convenience for sequential use and holds the counters
    of the most recently finished call; concurrent callers should pass
    their own RankStats to rank().
    """

    def __init__(self,
                 decoder: Optional[RasterDecoder] = None,
                 side: int = DEFAULT_RASTER_SIDE,
                 max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
                 decode_timeout: Optional[float] = DEFAULT_DECODE_TIMEOUT,
                 components: Sequence[ScoreComponent] = DEFAULT_COMPONENTS,
                 cache: Optional[DescriptorCache] = None,
                 num_colors: int = DEFAULT_NUM_COLORS,
                 sample_stride: int = DEFAULT_COLOR_SAMPLE_STRIDE,
                 edge_threshold: float = DEFAULT_EDGE_THRESHOLD):
        """
        Args:
            decoder: RasterDecoder for all images (OpenCV by default).
            side: Raster side length for every descriptor.
            max_concurrency: Maximum candidate decodes in flight at once.
            decode_timeout: Seconds allowed per image, None for no limit.
            components: Weighted scoring table.
            cache: Optional descriptor cache shared between calls.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.decoder = decoder
        self.side = side
        self.max_concurrency = max_concurrency
        self.decode_timeout = decode_timeout
        self.components = tuple(components)
        self.cache = cache
        self.num_colors = num_colors
        self.sample_stride = sample_stride
        self.edge_threshold = edge_threshold
        self.last_stats = RankStats()

    async def describe(self, image_ref) -> ImageDescriptor:
        """
        Descriptor for one image, served from the cache when possible.

        Raises:
            ExtractionFailure: If the image cannot be analysed.
        """
        key = None
        if self.cache is not None:
            key = await asyncio.to_thread(fingerprint, image_ref)
            cached = self.cache.lookup(key, self.side)
            if cached is not None:
                return cached

        descriptor = await extract(
            image_ref,
            side=self.side,
            decoder=self.decoder,
            timeout=self.decode_timeout,
            num_colors=self.num_colors,
            sample_stride=self.sample_stride,
            edge_threshold=self.edge_threshold,
        )

        if self.cache is not None:
            self.cache.store(key, descriptor)
        return descriptor

    async def rank(self,
                   query_image_ref,
                   candidates: Iterable[CandidateItem],
                   threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
                   limit: int = DEFAULT_RESULT_LIMIT,
                   stats: Optional[RankStats] = None) -> List[MatchResult]:
        """
        Find the candidates that look most like the query photo.

        Args:
            query_image_ref: Reference to the query photo.
            candidates: Items to compare; only the first image of each is used.
            threshold: Minimum similarity in [0, 1] to be returned.
            limit: Maximum number of results.
            stats: Optional RankStats filled in with this call's counters.

        Returns:
            MatchResults sorted by similarity, highest first. Candidates
            with equal similarity keep their input order. An empty list
            means nothing similar was found.

        Raises:
            QueryImageInvalid: If the query photo cannot be analysed.
            ValueError: If threshold is outside [0, 1].
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")

        candidates = list(candidates)
        if stats is None:
            stats = RankStats()
        stats.candidates = len(candidates)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        query_task = asyncio.ensure_future(self.describe(query_image_ref))
        candidate_tasks = []
        for candidate in candidates:
            if candidate.primary_image is None:
                stats.skipped_no_image += 1
                continue
            task = asyncio.ensure_future(self._describe_candidate(candidate, semaphore))
            candidate_tasks.append((candidate, task))

        try:
            try:
                query_descriptor = await query_task
            except ExtractionFailure as e:
                logger.error(f"Query image could not be analyzed: {e}")
                raise QueryImageInvalid(query_image_ref, e.cause) from e

            descriptors = await asyncio.gather(*(task for _, task in candidate_tasks))
        finally:
            # Abandoned or failed calls must not leave decodes running
            pending = [task for _, task in candidate_tasks if not task.done()]
            if not query_task.done():
                pending.append(query_task)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self.last_stats = stats

        matches = []
        for (candidate, _), descriptor in zip(candidate_tasks, descriptors):
            if descriptor is None:
                stats.failed += 1
                continue
            stats.extracted += 1

            similarity, sub_scores = score_with_breakdown(
                query_descriptor, descriptor, self.components
            )
            logger.debug(f"Candidate {candidate.item_id}: similarity={similarity:.4f}")

            if similarity >= threshold:
                matches.append(MatchResult(
                    candidate=candidate,
                    similarity=similarity,
                    matched_image_ref=candidate.primary_image,
                    sub_scores=sub_scores,
                ))

        stats.matched = len(matches)
        # sorted() is stable: equal scores keep candidate input order
        results = sorted(matches, key=lambda m: -m.similarity)[:max(0, limit)]
        stats.returned = len(results)

        attempted = stats.extracted + stats.failed
        if attempted and stats.failed == attempted:
            logger.warning(
                f"All {attempted} candidate images failed to load; "
                f"image references may be broken"
            )
        logger.info(
            f"Ranked {stats.candidates} candidates: {stats.extracted} analyzed, "
            f"{stats.failed} failed, {stats.skipped_no_image} without images, "
            f"{stats.matched} above threshold {threshold}, {stats.returned} returned"
        )
        return results

    async def _describe_candidate(self, candidate: CandidateItem,
                                  semaphore: asyncio.Semaphore
                                  ) -> Optional[ImageDescriptor]:
        async with semaphore:
            try:
                return await self.describe(candidate.primary_image)
            except ExtractionFailure as e:
                logger.warning(f"Skipping candidate {candidate.item_id}: {e}")
                return None


async def rank(query_image_ref,
               candidates: Iterable[CandidateItem],
               threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
               limit: int = DEFAULT_RESULT_LIMIT,
               stats: Optional[RankStats] = None,
               **ranker_options) -> List[MatchResult]:
    """Rank candidates with a one-off SimilarityRanker. See SimilarityRanker.rank."""
    ranker = SimilarityRanker(**ranker_options)
    return await ranker.rank(
        query_image_ref, candidates, threshold=threshold, limit=limit, stats=stats
    )
