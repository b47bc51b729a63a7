from __future__ import annotations

from typing import List, Sequence, Tuple

import cv2
import numpy as np

from facegallery.utils.draw import blend_rect, draw_text_field, draw_texts, measure_text
from facegallery.utils.log import get_logger
from facegallery.video.loop import FaceAnnotation

logger = get_logger(__name__)

KNOWN_COLOR = (194, 227, 80)  # 青绿色
UNKNOWN_COLOR = (0, 0, 255)  # 红色
LANDMARK_COLOR = (0, 215, 255)  # 金色

# iBUG 68 点分区：(起, 止, 是否闭合, BGR 颜色)
JAW_COLOR = (0, 215, 255)  # 金色
MOUTH_COLOR = (180, 105, 255)  # 粉色
NOSE_COLOR = (255, 144, 30)  # 蓝色
EYE_COLOR = (50, 205, 50)  # 绿色
BROW_COLOR = (0, 165, 255)  # 橙色

LANDMARK_REGIONS_68 = [
    (0, 17, False, JAW_COLOR),
    (17, 22, False, BROW_COLOR),
    (22, 27, False, BROW_COLOR),
    (27, 31, False, NOSE_COLOR),
    (31, 36, False, NOSE_COLOR),
    (36, 42, True, EYE_COLOR),
    (42, 48, True, EYE_COLOR),
    (48, 60, True, MOUTH_COLOR),
    (60, 68, True, MOUTH_COLOR),
]

GENDER_TEXT = {"male": "Male", "female": "Female"}


def format_label(ann: FaceAnnotation) -> str:
    """`Budi (67%)` for known faces, `Unknown` otherwise."""
    if not ann.is_known:
        return "Unknown"
    return f"{ann.label} ({ann.similarity_percent}%)"


def format_details(ann: FaceAnnotation) -> List[str]:
    lines: List[str] = []
    gender = GENDER_TEXT.get(ann.gender or "", None)
    if gender is not None and ann.age is not None:
        lines.append(f"{gender}, ~{int(round(ann.age))} yrs")
    elif gender is not None:
        lines.append(gender)
    elif ann.age is not None:
        lines.append(f"~{int(round(ann.age))} yrs")
    if ann.top_expression:
        lines.append(f"Expression: {ann.top_expression}")
    return lines


def draw_landmarks(frame: np.ndarray, landmarks: np.ndarray, thickness: int = 2) -> None:
    """68 点画分区轮廓线，其他点数（106 / 5 点）只画点。"""
    pts = np.round(np.asarray(landmarks, dtype=np.float32).reshape(-1, 2)).astype(np.int32)
    if len(pts) == 68:
        for start, end, closed, color in LANDMARK_REGIONS_68:
            cv2.polylines(frame, [pts[start:end].reshape(-1, 1, 2)], closed, color, thickness, cv2.LINE_AA)
        return
    for px, py in pts:
        cv2.circle(frame, (int(px), int(py)), 1, LANDMARK_COLOR, -1)


class OverlayRenderer:
    """Draws annotations onto BGR frames. Rendering only; never touches the gallery."""

    def __init__(self, show_landmarks: bool = False, font_size: int = 18, detail_font_size: int = 16):
        self.show_landmarks = bool(show_landmarks)
        self.font_size = int(font_size)
        self.detail_font_size = int(detail_font_size)

    def toggle_landmarks(self, on: bool) -> None:
        self.show_landmarks = bool(on)
        logger.info(f"Show landmarks: {self.show_landmarks}")

    def draw(self, frame: np.ndarray, annotations: Sequence[FaceAnnotation]) -> np.ndarray:
        """Draw in place and return `frame`."""
        texts: List[Tuple[str, Tuple[int, int], int, Tuple[int, int, int]]] = []
        for ann in annotations:
            x1, y1, x2, y2 = [int(v) for v in ann.bbox]
            color = KNOWN_COLOR if ann.is_known else UNKNOWN_COLOR
            cv2.rectangle(frame, (x1, y1), (x2, y2), color, 2)

            label = format_label(ann)
            text_w, text_h = measure_text(label, self.font_size)
            pad = 5
            bg_y1 = max(0, y1 - text_h - pad * 2)
            blend_rect(frame, (x1, bg_y1), (x1 + text_w + pad * 2, y1), (0, 0, 0), 0.5)
            texts.append((label, (x1 + pad, bg_y1 + pad), self.font_size, (255, 255, 255)))

            if self.show_landmarks and ann.landmarks is not None:
                draw_landmarks(frame, ann.landmarks)

        # 同一帧批量绘制文字，只做一次 PIL 转换
        draw_texts(frame, texts)

        for ann in annotations:
            x1, _, _, y2 = [int(v) for v in ann.bbox]
            draw_text_field(frame, format_details(ann), (x1, y2 + 5), font_size=self.detail_font_size)
        return frame
