from __future__ import annotations

import sys

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import cv2
import numpy as np
import pytest

# Ensure repo root is on sys.path so tests can import `facegallery` and `face_demo`.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))


@dataclass
class DummyDetection:
    bbox: Tuple[int, int, int, int]
    descriptor: np.ndarray
    landmarks: Optional[np.ndarray] = None
    age: Optional[float] = 30.0
    gender: Optional[str] = "female"
    expressions: Dict[str, float] = field(default_factory=lambda: {"happy": 0.8, "neutral": 0.2})

    @property
    def top_expression(self) -> Optional[str]:
        if not self.expressions:
            return None
        return max(self.expressions.items(), key=lambda kv: kv[1])[0]


class DummyAdapter:
    """Stands in for the InsightFace adapter.

    The descriptor of an image is its top-left BGR pixel / 255; an all-black pixel
    means "no face".
    """

    descriptor_length = 3

    def __init__(self) -> None:
        self.calls = 0

    def detect_face(self, image: np.ndarray) -> Optional[DummyDetection]:
        self.calls += 1
        pixel = np.asarray(image[0, 0], dtype=np.float32)
        if not pixel.any():
            return None
        h, w = image.shape[:2]
        return DummyDetection(
            bbox=(0, 0, int(w), int(h)),
            descriptor=pixel / 255.0,
            landmarks=np.array([[1.0, 1.0], [2.0, 2.0]], dtype=np.float32),
        )

    def detect_all_faces(self, frame: np.ndarray):
        det = self.detect_face(frame)
        return [det] if det is not None else []


def color_image(bgr, size: int = 16) -> np.ndarray:
    img = np.zeros((size, size, 3), dtype=np.uint8)
    img[:] = bgr
    return img


def write_color_image(path: Path, bgr, size: int = 16) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    assert cv2.imwrite(str(path), color_image(bgr, size))
    return path


def descriptor_of(bgr) -> np.ndarray:
    return np.asarray(bgr, dtype=np.float32) / 255.0


@pytest.fixture
def adapter() -> DummyAdapter:
    return DummyAdapter()
