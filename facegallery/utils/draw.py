from __future__ import annotations

from functools import lru_cache
from typing import Iterable, Sequence, Tuple

import warnings

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from facegallery.config import FONT_LIST


_WARNED_NO_UNICODE_FONT = False

BGR = Tuple[int, int, int]


@lru_cache(maxsize=128)
def _load_font(font_path: str, font_size: int) -> ImageFont.FreeTypeFont:
    return ImageFont.truetype(font_path, font_size)


@lru_cache(maxsize=64)
def _get_best_font(font_size: int) -> ImageFont.ImageFont:
    """Return the first loadable font from FONT_LIST (cached)."""
    for p in FONT_LIST:
        try:
            return _load_font(p, int(font_size))
        except OSError:
            continue
    return ImageFont.load_default()


def _warn_once_no_unicode_font_if_needed(texts: Iterable[str]) -> None:
    global _WARNED_NO_UNICODE_FONT
    if _WARNED_NO_UNICODE_FONT:
        return
    if not any(any(ord(ch) > 127 for ch in t) for t in texts):
        return
    for p in FONT_LIST:
        try:
            _load_font(p, 16)
            return
        except OSError:
            continue
    _WARNED_NO_UNICODE_FONT = True
    warnings.warn(
        "No usable TrueType font in FONT_LIST; non-ASCII names may render as boxes. "
        "Install fonts-dejavu / fonts-noto or add a font path to facegallery/config.py.",
        RuntimeWarning,
    )


def draw_texts(
    img: np.ndarray,
    items: Sequence[Tuple[str, Tuple[int, int], int, BGR]],
) -> None:
    """Draw multiple unicode texts onto one frame with a single PIL conversion.

    Args:
        img: OpenCV BGR image, modified in-place.
        items: sequence of (text, (x, y), font_size_px, bgr_color)
    """
    if img is None or len(items) == 0:
        return

    try:
        _warn_once_no_unicode_font_if_needed([t for (t, _, _, _) in items])

        pil_img = Image.fromarray(cv2.cvtColor(img, cv2.COLOR_BGR2RGB))
        draw = ImageDraw.Draw(pil_img)

        for text, org, font_size, bgr in items:
            font = _get_best_font(int(font_size))
            # PIL uses RGB
            rgb_color = (int(bgr[2]), int(bgr[1]), int(bgr[0]))
            draw.text(tuple(org), str(text), font=font, fill=rgb_color)

        img[:] = cv2.cvtColor(np.array(pil_img), cv2.COLOR_RGB2BGR)
    except (OSError, ValueError):
        # Fallback: OpenCV Hershey font (ASCII only)
        for text, org, font_size, bgr in items:
            font_scale = max(0.3, int(font_size) / 24.0)
            x, y = int(org[0]), int(org[1]) + int(font_size)
            cv2.putText(
                img,
                str(text),
                (x, y),
                cv2.FONT_HERSHEY_SIMPLEX,
                font_scale,
                (int(bgr[0]), int(bgr[1]), int(bgr[2])),
                1,
                cv2.LINE_AA,
            )


def measure_text(text: str, font_size: int = 14) -> Tuple[int, int]:
    """Pixel size of `text`; cached because the overlay calls it every frame."""
    return _measure_text_cached(str(text), int(font_size))


@lru_cache(maxsize=4096)
def _measure_text_cached(text: str, font_size: int) -> Tuple[int, int]:
    try:
        font = _get_best_font(int(font_size))
        dummy = Image.new("RGB", (10, 10))
        draw = ImageDraw.Draw(dummy)
        bbox = draw.textbbox((0, 0), text, font=font)
        return int(bbox[2] - bbox[0]), int(bbox[3] - bbox[1])
    except (OSError, ValueError):
        font_scale = max(0.3, float(font_size) / 24.0)
        (w, h), _ = cv2.getTextSize(text, cv2.FONT_HERSHEY_SIMPLEX, font_scale, 1)
        return int(w), int(h)


def blend_rect(img: np.ndarray, pt1: Tuple[int, int], pt2: Tuple[int, int], color: BGR, alpha: float) -> None:
    """Filled rectangle with opacity `alpha`, in place."""
    h, w = img.shape[:2]
    x1, y1 = max(0, int(pt1[0])), max(0, int(pt1[1]))
    x2, y2 = min(w, int(pt2[0])), min(h, int(pt2[1]))
    if x2 <= x1 or y2 <= y1:
        return
    roi = img[y1:y2, x1:x2]
    overlay = np.empty_like(roi)
    overlay[:] = color
    roi[:] = cv2.addWeighted(overlay, float(alpha), roi, 1.0 - float(alpha), 0.0)


def draw_text_field(
    img: np.ndarray,
    lines: Sequence[str],
    org: Tuple[int, int],
    font_size: int = 16,
    color: BGR = (255, 255, 255),
    background: BGR = (0, 0, 0),
    alpha: float = 0.5,
    padding: int = 5,
) -> None:
    """Stack `lines` from `org` (top-left) on a translucent background box."""
    lines = [str(s) for s in lines if s]
    if not lines:
        return
    sizes = [measure_text(s, font_size) for s in lines]
    line_h = max(h for _, h in sizes) + padding
    box_w = max(w for w, _ in sizes) + padding * 2
    box_h = line_h * len(lines) + padding
    x, y = int(org[0]), int(org[1])
    blend_rect(img, (x, y), (x + box_w, y + box_h), background, alpha)
    draw_texts(
        img,
        [(s, (x + padding, y + padding + i * line_h), int(font_size), color) for i, s in enumerate(lines)],
    )
