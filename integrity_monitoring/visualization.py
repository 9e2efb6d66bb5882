"""
Utilities for drawing analysis results onto evidence frames.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

import cv2
import numpy as np

from .biometrics import FaceObservation, FrameAnalysis

FACE_COLOR = (0, 200, 0)
ALERT_COLOR = (0, 0, 220)


def annotate_evidence(
    image_bgr: np.ndarray,
    analysis: Optional[FrameAnalysis],
    label: str,
    face_color: Tuple[int, int, int] = FACE_COLOR,
    alert_color: Tuple[int, int, int] = ALERT_COLOR,
) -> np.ndarray:
    """
    Draw face boxes and the event label on a copy of the frame.
    """
    annotated = image_bgr.copy()
    if analysis is not None:
        color = face_color if analysis.face_count == 1 else alert_color
        for face in analysis.faces:
            _draw_bbox_with_label(annotated, face.box, _format_face_label(face), color)
    _draw_label(annotated, label, (10, 20), alert_color)
    return annotated


def _draw_bbox_with_label(
    image: np.ndarray,
    bbox: Iterable[float],
    label: str,
    color: Tuple[int, int, int],
) -> None:
    x1, y1, x2, y2 = [int(v) for v in bbox]
    cv2.rectangle(image, (x1, y1), (x2, y2), color, 2)
    _draw_label(image, label, (x1, y1 - 10), color)


def _draw_label(
    image: np.ndarray,
    text: str,
    origin: Tuple[int, int],
    color: Tuple[int, int, int],
    font_scale: float = 0.5,
    thickness: int = 1,
) -> None:
    font = cv2.FONT_HERSHEY_SIMPLEX
    text_size, baseline = cv2.getTextSize(text, font, font_scale, thickness)
    x, y = origin
    y = max(text_size[1], y)
    cv2.rectangle(
        image,
        (x, y - text_size[1] - baseline),
        (x + text_size[0], y + baseline),
        color,
        cv2.FILLED,
    )
    cv2.putText(
        image,
        text,
        (x, y),
        font,
        font_scale,
        (255, 255, 255),
        thickness,
        cv2.LINE_AA,
    )


def _format_face_label(face: FaceObservation) -> str:
    return f"face {face.score:.2f}"
