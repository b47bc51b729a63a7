from __future__ import annotations

import threading

from typing import List, Optional, Sequence, Tuple

import numpy as np

from facegallery.config import MATCH_THRESHOLD
from facegallery.face.errors import AllImagesFailed, EnrollmentError, InvalidEnrollment, NoFaceDetected
from facegallery.face.gallery import Gallery
from facegallery.face.loader import BundledGalleryLoader, LoadReport
from facegallery.face.matcher import EuclideanMatcher, MatcherConfig, MatchResult
from facegallery.face.store import GalleryStore
from facegallery.utils.image import ImageSource, describe_source, read_image
from facegallery.utils.log import get_logger

logger = get_logger(__name__)


class GalleryManager:
    """Owns the in-memory gallery, its persisted copy and the matcher built from it.

    Bundled references win over stored identities with the same label. Every
    mutation persists the whole gallery first and then swaps in the new gallery
    together with a freshly built matcher.
    """

    def __init__(
        self,
        adapter,
        store: GalleryStore,
        loader: Optional[BundledGalleryLoader] = None,
        threshold: float = MATCH_THRESHOLD,
        descriptor_length: Optional[int] = None,
    ):
        """
        Args:
            adapter: descriptor source; needs `detect_face(image) -> FaceDetection | None`
            store: persistence for enrolled identities
            loader: bundled reference loader, None to skip bundled identities
            threshold: matcher distance threshold (inclusive)
            descriptor_length: length of the adapter's descriptors; defaults to
                `adapter.descriptor_length` when the adapter reports one
        """
        self.adapter = adapter
        self.store = store
        self.loader = loader
        self.matcher_config = MatcherConfig(threshold=float(threshold))
        if descriptor_length is None:
            descriptor_length = getattr(adapter, "descriptor_length", None)
        self.descriptor_length: Optional[int] = int(descriptor_length) if descriptor_length else None

        self._lock = threading.Lock()
        self._gallery = Gallery()
        self._matcher = EuclideanMatcher(self._gallery, self.matcher_config)

    # -- state --------------------------------------------------------------

    @property
    def gallery(self) -> Gallery:
        """Copy of the current gallery."""
        return self._gallery.copy()

    @property
    def matcher(self) -> EuclideanMatcher:
        return self._matcher

    @property
    def last_load_report(self) -> Optional[LoadReport]:
        return self.loader.last_report if self.loader is not None else None

    def labels(self) -> List[str]:
        return self._gallery.labels()

    def set_threshold(self, threshold: float) -> None:
        with self._lock:
            self.matcher_config = MatcherConfig(
                threshold=float(threshold), unknown_label=self.matcher_config.unknown_label
            )
            self._install(self._gallery)

    def _install(self, gallery: Gallery) -> None:
        # build before publishing; readers only ever see a matching (gallery, matcher) pair
        matcher = EuclideanMatcher(gallery, self.matcher_config)
        self._gallery = gallery
        self._matcher = matcher
        logger.info(f"Matcher rebuilt: {len(matcher)} identities, threshold={matcher.threshold}")

    # -- startup ------------------------------------------------------------

    @staticmethod
    def merge_galleries(bundled: Gallery, stored: Gallery) -> Gallery:
        """Bundled records first; stored records only for labels not bundled."""
        merged = bundled.copy()
        for rec in stored.records():
            if rec.label in merged:
                logger.info(f"Stored identity '{rec.label}' shadowed by bundled reference")
                continue
            merged.put(rec.copy())
        return merged

    def build_initial_gallery(self) -> Gallery:
        bundled = self.loader.load() if self.loader is not None else Gallery()
        stored = self._check_stored(self.store.load(), bundled)
        try:
            merged = self.merge_galleries(bundled, stored)
        except ValueError as e:
            # stored descriptors come from a different model than the bundled ones
            logger.error(f"Stored gallery incompatible with bundled references, ignoring it: {e}")
            merged = bundled.copy()

        with self._lock:
            self._install(merged)
        logger.info(
            f"Hybrid gallery ready: {len(merged)} identities "
            f"(bundled={len(bundled)}, stored={len(stored)})"
        )
        return merged.copy()

    def _check_stored(self, stored: Gallery, bundled: Gallery) -> Gallery:
        """Drop stored identities whose descriptors the current model cannot have produced."""
        expected = self.descriptor_length or bundled.descriptor_length
        found = stored.descriptor_length
        if expected is None or found is None or found == expected:
            return stored
        logger.error(
            f"Stored gallery under '{self.store.key}' holds {found}-d descriptors but the model "
            f"produces {expected}-d, ignoring it"
        )
        return Gallery()

    # -- enrollment ---------------------------------------------------------

    def _extract_descriptors(self, images: Sequence[ImageSource]) -> List[np.ndarray]:
        descriptors: List[np.ndarray] = []
        for src in images:
            name = describe_source(src)
            try:
                image = read_image(src)
            except TypeError as e:
                logger.warning(f"Enrollment image skipped ({name}): {e}")
                continue
            if image is None:
                logger.warning(f"Enrollment image skipped ({name}): cannot decode")
                continue
            try:
                det = self.adapter.detect_face(image)
            except Exception as e:
                logger.error(f"Face analysis failed on {name}: {e}")
                continue
            if det is None:
                logger.warning(str(NoFaceDetected(f"no face detected in {name}", source=name)))
                continue
            descriptors.append(np.asarray(det.descriptor, dtype=np.float32))
        return descriptors

    def enroll(self, label: str, images: Sequence[ImageSource]) -> int:
        """Add descriptors extracted from `images` to `label` and persist the gallery.

        Returns the number of descriptors added. Raises AllImagesFailed when no image
        yields a face; the gallery and the store are left untouched in that case.
        """
        if not isinstance(label, str) or not label:
            raise InvalidEnrollment("label must be a non-empty string")
        images = list(images)
        if not images:
            raise InvalidEnrollment(f"no images given for '{label}'")

        descriptors = self._extract_descriptors(images)
        if not descriptors:
            raise AllImagesFailed(label, len(images))

        with self._lock:
            updated = self._gallery.copy()
            added = updated.add_person_descriptors(label, descriptors)
            self.store.save(updated)
            self._install(updated)

        logger.info(f"Enrolled '{label}': +{added} descriptor(s), total {len(updated[label].descriptors)}")
        return added

    def enroll_person(self, name: str, files: Sequence[ImageSource]) -> Tuple[bool, str]:
        """UI-facing enrollment: returns (success, message for the user)."""
        label = (name or "").strip()
        if not label or not files:
            return False, "Please enter a name and choose at least one photo."
        try:
            added = self.enroll(label, files)
        except AllImagesFailed:
            return False, f"Could not enroll {label}: no face found. Make sure the photos are clear."
        except EnrollmentError as e:
            return False, f"Could not enroll {label}: {e}"
        except ValueError as e:
            logger.error(f"Enrollment of '{label}' rejected: {e}")
            return False, f"Could not enroll {label}: {e}"
        return True, f"{label} enrolled and saved ({added} face sample(s))."

    # -- matching -----------------------------------------------------------

    def find_best_match(self, descriptor: np.ndarray) -> MatchResult:
        return self._matcher.find_best_match(descriptor)
