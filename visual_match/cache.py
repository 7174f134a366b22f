"""
In-memory descriptor cache.

Descriptors are keyed by (image reference, content fingerprint) so a file
that changes on disk, or a different byte buffer, never hits a stale
entry. Remote URLs are fingerprinted by the URL alone; call invalidate()
when the resource behind a URL is replaced.
"""

import hashlib
import logging
import os
import threading
from collections import OrderedDict
from typing import Hashable, Optional, Tuple

import numpy as np

from .features import ImageDescriptor

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = int(os.environ.get("VM_CACHE_MAX_ITEMS", "512"))


def fingerprint(image_ref) -> Optional[Tuple[Hashable, Hashable]]:
    """
    Return a cache key for an image reference, or None if it is uncacheable.

    Paths use (mtime_ns, size); buffers and arrays use a SHA-1 digest of
    their content; URL strings use the URL itself.

    Hashing a large buffer or stat-ing a file blocks, so async callers run
    this in a worker thread and pass the key to lookup() and store().
    """
    if isinstance(image_ref, np.ndarray):
        digest = hashlib.sha1(np.ascontiguousarray(image_ref).tobytes()).hexdigest()
        return ("array", image_ref.shape, str(image_ref.dtype)), digest

    if isinstance(image_ref, (bytes, bytearray, memoryview)):
        return "bytes", hashlib.sha1(bytes(image_ref)).hexdigest()

    if isinstance(image_ref, str) and image_ref.startswith(("http://", "https://", "data:")):
        return image_ref, None

    if isinstance(image_ref, (str, os.PathLike)):
        path = os.path.abspath(os.fspath(image_ref))
        try:
            stat = os.stat(path)
        except OSError:
            return None
        return path, (stat.st_mtime_ns, stat.st_size)

    # File objects are consumed by reading, so they are never cached
    return None


class DescriptorCache:
    """Bounded LRU map from image fingerprints to descriptors."""

    def __init__(self, max_items: int = DEFAULT_MAX_ITEMS):
        self.max_items = max_items
        self._entries: "OrderedDict[tuple, ImageDescriptor]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self):
        return len(self._entries)

    def get(self, image_ref, side: int) -> Optional[ImageDescriptor]:
        return self.lookup(fingerprint(image_ref), side)

    def put(self, image_ref, descriptor: ImageDescriptor) -> None:
        self.store(fingerprint(image_ref), descriptor)

    def lookup(self, key, side: int) -> Optional[ImageDescriptor]:
        """get() with a precomputed fingerprint, which may be None."""
        if key is None:
            return None
        with self._lock:
            descriptor = self._entries.get((key, side))
            if descriptor is None:
                self.misses += 1
                return None
            self._entries.move_to_end((key, side))
            self.hits += 1
            return descriptor

    def store(self, key, descriptor: ImageDescriptor) -> None:
        """put() with a precomputed fingerprint, which may be None."""
        if key is None or self.max_items <= 0:
            return
        with self._lock:
            self._entries[(key, descriptor.side)] = descriptor
            self._entries.move_to_end((key, descriptor.side))
            while len(self._entries) > self.max_items:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted cached descriptor {evicted[0][0]!r}")

    def invalidate(self, image_ref) -> int:
        """Drop every entry for image_ref, whatever its fingerprint. Returns count removed."""
        if isinstance(image_ref, (str, os.PathLike)) and not str(image_ref).startswith(
                ("http://", "https://", "data:")):
            path = os.path.abspath(os.fspath(image_ref))

            def matches(key):
                return key[0] == path
        else:
            ref_key = fingerprint(image_ref)
            if ref_key is None:
                return 0

            def matches(key):
                return key == ref_key

        with self._lock:
            stale = [k for k in self._entries if matches(k[0])]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
