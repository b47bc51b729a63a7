"""Error kinds raised by the gallery, store, loader and model adapter."""

from __future__ import annotations

from typing import Optional


class FaceGalleryError(Exception):
    """Base class for all facegallery errors."""


class ModelUnavailable(FaceGalleryError):
    """The face-analysis model bundle could not be initialized. Nothing can run without it."""


class StorageCorrupt(FaceGalleryError):
    """The persisted gallery document is malformed or uses an unknown schema."""


class ReferenceAssetMissing(FaceGalleryError):
    """A bundled reference label folder (or all of its images) is absent."""

    def __init__(self, label: str, path: str):
        super().__init__(f"reference assets for '{label}' not found: {path}")
        self.label = label
        self.path = path


class EnrollmentError(FaceGalleryError):
    """Enrollment could not add anything to the gallery."""


class InvalidEnrollment(EnrollmentError):
    """Empty label or no input images."""


class NoFaceDetected(EnrollmentError):
    """An enrollment image yielded no usable descriptor."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class AllImagesFailed(NoFaceDetected):
    """No descriptor could be extracted from any of the enrollment images."""

    def __init__(self, label: str, attempted: int):
        super().__init__(f"no face detected in any of {attempted} image(s) for '{label}'")
        self.label = label
        self.attempted = attempted
