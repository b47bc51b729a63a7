from __future__ import annotations

import threading
import time

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from facegallery.config import DETECTION_INTERVAL
from facegallery.face.matcher import MatchResult
from facegallery.utils.log import get_logger

logger = get_logger(__name__)


@dataclass
class FaceAnnotation:
    """What the overlay needs for one face in one frame."""

    bbox: Tuple[int, int, int, int]
    label: str
    distance: Optional[float]
    is_known: bool
    similarity_percent: int
    age: Optional[float] = None
    gender: Optional[str] = None
    top_expression: Optional[str] = None
    landmarks: Optional[np.ndarray] = None


def open_camera(index: int = 0, width: Optional[int] = None, height: Optional[int] = None) -> cv2.VideoCapture:
    cap = cv2.VideoCapture(int(index))
    if not cap.isOpened():
        cap.release()
        raise RuntimeError(f"无法打开摄像头: {index}")
    if width:
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(width))
    if height:
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(height))
    logger.info(f"✅ 摄像头已打开: {index}")
    return cap


class DetectionLoop:
    """Periodic detect-and-match cycle over a video capture.

    At most one cycle runs at a time: a tick that fires while the previous cycle is
    still busy is skipped, never queued.
    """

    def __init__(
        self,
        adapter,
        manager,
        capture=None,
        interval: float = DETECTION_INTERVAL,
    ):
        """
        Args:
            adapter: needs `detect_all_faces(frame) -> List[FaceDetection]`
            manager: GalleryManager; its current matcher is read on every tick
            capture: object with `read() -> (ok, frame)` and `release()`, e.g. cv2.VideoCapture
            interval: seconds between ticks
        """
        self.adapter = adapter
        self.manager = manager
        self.capture = capture
        self.interval = float(interval)

        self._busy = threading.Lock()
        self._stop = threading.Event()
        self.ticks = 0
        self.skipped_ticks = 0
        self.last_frame: Optional[np.ndarray] = None

    def __enter__(self) -> "DetectionLoop":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _grab(self) -> Optional[np.ndarray]:
        if self.capture is None:
            return None
        ok, frame = self.capture.read()
        if not ok or frame is None:
            return None
        return frame

    def on_frame_tick(self, frame: Optional[np.ndarray] = None) -> Optional[List[FaceAnnotation]]:
        """Run one cycle. Returns None when skipped because a cycle is already running."""
        if not self._busy.acquire(blocking=False):
            self.skipped_ticks += 1
            return None
        try:
            self.ticks += 1
            if frame is None:
                frame = self._grab()
            self.last_frame = frame
            if frame is None:
                return []
            return self._annotate(frame)
        finally:
            self._busy.release()

    def _annotate(self, frame: np.ndarray) -> List[FaceAnnotation]:
        detections = self.adapter.detect_all_faces(frame)
        # one matcher reference per frame, even if an enrollment swaps it mid-cycle
        matcher = self.manager.matcher
        out: List[FaceAnnotation] = []
        for det in detections:
            try:
                match = matcher.find_best_match(det.descriptor)
            except ValueError as e:
                # descriptor from a different model than the gallery; keep the loop alive
                logger.warning(f"Match skipped: {e}")
                match = MatchResult(matcher.config.unknown_label, None, matcher.config.unknown_label)
            out.append(
                FaceAnnotation(
                    bbox=tuple(int(v) for v in det.bbox),
                    label=match.label,
                    distance=match.distance,
                    is_known=match.is_known,
                    similarity_percent=match.similarity_percent(),
                    age=det.age,
                    gender=det.gender,
                    top_expression=det.top_expression,
                    landmarks=det.landmarks,
                )
            )
        return out

    def run(
        self,
        on_result: Optional[Callable[[np.ndarray, List[FaceAnnotation]], None]] = None,
        max_ticks: Optional[int] = None,
        on_idle: Optional[Callable[[], None]] = None,
    ) -> None:
        """Tick every `interval` seconds until `stop()` or `max_ticks`.

        `on_result(frame, annotations)` runs after every tick that had a frame,
        `on_idle()` after every tick that did not (e.g. to keep a UI responsive).
        Ticks missed while a cycle overran are dropped, not replayed.
        """
        self._stop.clear()
        next_at = time.monotonic()
        done = 0
        while not self._stop.is_set():
            if max_ticks is not None and done >= int(max_ticks):
                break
            annotations = self.on_frame_tick()
            done += 1
            if annotations is not None and self.last_frame is not None:
                if on_result is not None:
                    on_result(self.last_frame, annotations)
            elif on_idle is not None:
                on_idle()

            next_at += self.interval
            now = time.monotonic()
            if next_at < now:
                missed = int((now - next_at) // self.interval) + 1 if self.interval > 0 else 0
                self.skipped_ticks += missed
                next_at += missed * self.interval
            self._stop.wait(max(0.0, next_at - time.monotonic()))

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        self.stop()
        if self.capture is not None:
            try:
                self.capture.release()
            finally:
                self.capture = None
                logger.info("摄像头已释放")
