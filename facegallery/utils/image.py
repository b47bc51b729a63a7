from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

ImageSource = Union[str, Path, bytes, bytearray, np.ndarray]


def read_image(source: ImageSource) -> Optional[np.ndarray]:
    """Decode `source` (path, encoded bytes, file-like or array) into a BGR uint8 image.

    Returns None when the source cannot be decoded.
    """
    if isinstance(source, np.ndarray):
        img = source
    elif isinstance(source, (bytes, bytearray)):
        buf = np.frombuffer(bytes(source), dtype=np.uint8)
        img = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
    elif isinstance(source, (str, Path)):
        img = cv2.imread(str(source), cv2.IMREAD_COLOR)
    elif hasattr(source, "read"):
        return read_image(source.read())
    else:
        raise TypeError(f"unsupported image source: {type(source).__name__}")

    if img is None or img.size == 0:
        return None
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    elif img.ndim == 3 and img.shape[2] == 4:
        img = cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
    elif img.ndim != 3 or img.shape[2] != 3:
        return None
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    return img


def describe_source(source: ImageSource) -> str:
    """Short human-readable name for log lines."""
    if isinstance(source, (str, Path)):
        return str(source)
    name = getattr(source, "name", None)
    if isinstance(name, str):
        return name
    if isinstance(source, np.ndarray):
        return f"<array {'x'.join(str(s) for s in source.shape)}>"
    return f"<{type(source).__name__}>"
