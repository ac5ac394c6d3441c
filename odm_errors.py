"""
odm_errors.py — Exception types shared by the extraction pipeline.

Every failure the pipeline can surface to an HTTP client derives from
``ExtractionError`` so the request handlers can recover them at a single
boundary and turn them into a JSON ``{"error": ...}`` body.
"""


class ExtractionError(Exception):
    """Base class for recoverable extraction failures."""


class ArchiveUnavailableError(ExtractionError):
    """The remote result archive could not be downloaded or opened."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ArtifactNotFoundError(ExtractionError):
    """None of the candidate paths exist inside the archive.

    ``nearby`` lists archive paths that look related to the artifact.  It is
    purely diagnostic and never used for matching.
    """

    def __init__(self, label: str, candidates: list[str], nearby: list[str] | None = None):
        self.label = label
        self.candidates = list(candidates)
        self.nearby = list(nearby or [])
        super().__init__(
            f"{label} not found in all.zip (tried: {', '.join(self.candidates)})"
        )


class DecodeError(ExtractionError):
    """Matched bytes could not be parsed or transcoded."""


class RasterDecodeError(DecodeError):
    pass


class PointCloudDecodeError(DecodeError):
    pass


class UnsupportedFormatError(ExtractionError):
    """The matched file has no decoder for the requested output."""
