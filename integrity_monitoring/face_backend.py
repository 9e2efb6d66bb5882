"""
Face backend built on InsightFace (detector, 68-point landmarks, embedding).
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, List, Optional, Sequence

import numpy as np

try:
    from insightface.app import FaceAnalysis
except ImportError as exc:  # pragma: no cover - runtime environment specific
    raise ImportError(
        "insightface is required for biometric analysis. "
        "Install it with `pip install insightface`."
    ) from exc

from .biometrics import FaceBackend, RawFace
from .config import DEFAULT_INSIGHTFACE_MODEL
from .utils import ensure_uint8

LOGGER = logging.getLogger(__name__)


class InsightFaceBackend(FaceBackend):
    """
    Lazily prepared InsightFace model pack.

    ``ready`` stays False until ``prepare`` has finished, so the analyzer can
    report ``AnalysisUnavailable`` instead of an empty detection.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_INSIGHTFACE_MODEL,
        providers: Optional[Sequence[str]] = None,
        ctx_id: int = -1,
        det_size: Iterable[int] = (640, 640),
    ) -> None:
        if providers is None:
            providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
        self.model_name = model_name
        self.providers = list(providers)
        self.ctx_id = ctx_id
        self.det_size = tuple(det_size)
        self._face_app: Optional[FaceAnalysis] = None
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._face_app is not None

    def prepare(self) -> None:
        """
        Load and warm up the model pack. Safe to call more than once.
        """
        with self._lock:
            if self._face_app is not None:
                return
            LOGGER.info("Loading InsightFace model pack '%s'", self.model_name)
            face_app = FaceAnalysis(
                name=self.model_name,
                providers=self.providers,
                allowed_modules=["detection", "landmark_3d_68", "recognition"],
            )
            face_app.prepare(ctx_id=self.ctx_id, det_size=self.det_size)
            self._face_app = face_app
        LOGGER.info("InsightFace backend ready")

    def detect(self, image_bgr: np.ndarray) -> List[RawFace]:
        face_app = self._face_app
        if face_app is None:
            return []
        image = ensure_uint8(image_bgr)
        results: List[RawFace] = []
        for face in face_app.get(image):
            landmarks = getattr(face, "landmark_3d_68", None)
            if landmarks is not None:
                landmarks = np.asarray(landmarks, dtype=np.float32)[:, :2]
            embedding = getattr(face, "embedding", None)
            results.append(
                RawFace(
                    box=[float(v) for v in face.bbox],
                    score=float(getattr(face, "det_score", 0.0)),
                    landmarks=landmarks,
                    descriptor=(
                        np.asarray(embedding, dtype=np.float32)
                        if embedding is not None
                        else None
                    ),
                )
            )
        return results
