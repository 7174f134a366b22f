"""
Exception types raised by the image matcher.

ExtractionFailure is recoverable for candidate images (the ranker skips
the candidate). QueryImageInvalid is fatal: without a query descriptor
there is nothing to rank against.
"""


class VisualMatchError(Exception):
    """Base class for matcher errors."""


class ExtractionFailure(VisualMatchError):
    """A single image could not be decoded or analysed."""

    def __init__(self, image_ref, cause=None):
        self.image_ref = image_ref
        self.cause = cause
        message = f"Could not extract features from {describe_ref(image_ref)}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class QueryImageInvalid(VisualMatchError):
    """The query image could not be analysed."""

    def __init__(self, image_ref, cause=None):
        self.image_ref = image_ref
        self.cause = cause
        super().__init__(
            f"Could not analyze query image {describe_ref(image_ref)}"
        )


def describe_ref(image_ref) -> str:
    """Short printable form of an image reference for log messages."""
    if isinstance(image_ref, (bytes, bytearray, memoryview)):
        return f"<{len(image_ref)} bytes>"
    if hasattr(image_ref, "shape"):
        return f"<array {tuple(image_ref.shape)}>"
    text = str(image_ref)
    return text if len(text) <= 120 else text[:117] + "..."
