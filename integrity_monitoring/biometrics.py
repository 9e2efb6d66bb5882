"""
Biometric analysis adapter.

Wraps an external face backend (detector + landmarks + descriptor) behind a
stable contract and derives the liveness/gaze heuristics used by the
pipeline: eye-aspect-ratio (EAR), gaze offset and identity similarity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import DEFAULT_BIOMETRIC_THRESHOLDS
from .errors import AnalysisUnavailable, NoFaceInCandidate, NoFaceInReference
from .events import EventType
from .utils import ImageLike, load_image, serialize_bbox, to_float

LOGGER = logging.getLogger(__name__)

# 68-point landmark contours, six points per eye starting at the outer corner.
LEFT_EYE = tuple(range(36, 42))
RIGHT_EYE = tuple(range(42, 48))


@dataclass
class RawFace:
    """What a backend reports for one detected face."""

    box: Sequence[float]
    score: float
    landmarks: Optional[np.ndarray] = None
    descriptor: Optional[np.ndarray] = None


class FaceBackend:
    """
    External detection capability. Implementations report ``ready=False``
    until their models are loaded.
    """

    @property
    def ready(self) -> bool:
        raise NotImplementedError

    def detect(self, image_bgr: np.ndarray) -> List[RawFace]:
        raise NotImplementedError


@dataclass(frozen=True)
class BiometricThresholds:
    detection_score: float = DEFAULT_BIOMETRIC_THRESHOLDS["detection_score"]
    match: float = DEFAULT_BIOMETRIC_THRESHOLDS["match"]
    ear: float = DEFAULT_BIOMETRIC_THRESHOLDS["ear"]
    gaze: float = DEFAULT_BIOMETRIC_THRESHOLDS["gaze"]

    @classmethod
    def from_options(cls, options) -> "BiometricThresholds":
        return cls(
            detection_score=options.detection_score_threshold,
            match=options.match_threshold,
            ear=options.ear_threshold,
            gaze=options.gaze_threshold,
        )


@dataclass
class FaceObservation:
    box: List[float]
    score: float
    landmarks: Optional[List[List[float]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"box": self.box, "score": self.score, "landmarks": self.landmarks}


@dataclass
class FrameAnalysis:
    face_count: int
    faces: List[FaceObservation]
    ear_value: Optional[float]
    gaze_offset: Optional[float]
    frame_size: Tuple[int, int]
    descriptor: Optional[np.ndarray] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "faceCount": self.face_count,
            "faces": [face.to_dict() for face in self.faces],
            "earValue": self.ear_value,
            "gazeOffset": self.gaze_offset,
        }


@dataclass(frozen=True)
class FaceComparison:
    matched: bool
    similarity: float


@dataclass(frozen=True)
class EyeMovementVerdict:
    suspicious: bool
    reason: str


@dataclass
class VerificationOutcome:
    """
    Result of one authoritative frame check, already normalised into the
    events that should be recorded.
    """

    analysis: FrameAnalysis
    events: List[Tuple[EventType, Dict[str, Any]]]
    comparison: Optional[FaceComparison] = None

    @property
    def clean(self) -> bool:
        return all(kind is EventType.VERIFICATION_CLEAN for kind, _ in self.events)


# Landmark geometry -------------------------------------------------------


def eye_aspect_ratio(eye: np.ndarray) -> float:
    """
    EAR = (|p2 - p6| + |p3 - p5|) / (2 |p1 - p4|) for six eye points.
    """
    eye = np.asarray(eye, dtype=np.float64)
    if eye.shape != (6, 2):
        raise ValueError(f"Expected 6x2 eye landmarks, got {eye.shape}")
    vertical_a = np.linalg.norm(eye[1] - eye[5])
    vertical_b = np.linalg.norm(eye[2] - eye[4])
    horizontal = np.linalg.norm(eye[0] - eye[3])
    if horizontal < 1e-6:
        raise ValueError("Invalid eye corner geometry")
    return float((vertical_a + vertical_b) / (2.0 * horizontal))


def average_ear(landmarks: np.ndarray) -> float:
    points = np.asarray(landmarks, dtype=np.float64)
    left = eye_aspect_ratio(points[list(LEFT_EYE)])
    right = eye_aspect_ratio(points[list(RIGHT_EYE)])
    return (left + right) / 2.0


def gaze_offset(landmarks: np.ndarray, width: int, height: int) -> float:
    """
    Largest normalised displacement of the eye-centre midpoint from the
    frame centre, in [0, 0.5].
    """
    if width <= 0 or height <= 0:
        raise ValueError("Frame dimensions must be positive")
    points = np.asarray(landmarks, dtype=np.float64)
    left_center = points[list(LEFT_EYE)].mean(axis=0)
    right_center = points[list(RIGHT_EYE)].mean(axis=0)
    mid_x, mid_y = (left_center + right_center) / 2.0
    horizontal = abs(mid_x / width - 0.5)
    vertical = abs(mid_y / height - 0.5)
    return float(max(horizontal, vertical))


def classify_eye_movement(
    ear: Optional[float],
    gaze: Optional[float],
    thresholds: BiometricThresholds = BiometricThresholds(),
) -> EyeMovementVerdict:
    if ear is None:
        return EyeMovementVerdict(False, "No eye data")
    if ear < thresholds.ear:
        return EyeMovementVerdict(True, "Eyes nearly closed or looking down")
    if gaze is not None and gaze > thresholds.gaze:
        return EyeMovementVerdict(True, "Looking away from screen")
    return EyeMovementVerdict(False, "Normal eye position")


def descriptor_similarity(reference: np.ndarray, candidate: np.ndarray) -> float:
    """
    Cosine similarity of two face descriptors clamped to [0, 1].
    """
    ref = _normalize(np.asarray(reference, dtype=np.float64).ravel())
    cand = _normalize(np.asarray(candidate, dtype=np.float64).ravel())
    if ref.shape != cand.shape:
        raise ValueError("Descriptors have different dimensions")
    return float(np.clip(np.dot(ref, cand), 0.0, 1.0))


def compare_descriptors(
    reference: Optional[np.ndarray],
    candidate: Optional[np.ndarray],
    threshold: float,
) -> FaceComparison:
    if reference is None:
        raise NoFaceInReference("Reference frame contains no usable face")
    if candidate is None:
        raise NoFaceInCandidate("Candidate frame contains no usable face")
    similarity = descriptor_similarity(reference, candidate)
    return FaceComparison(matched=similarity >= threshold, similarity=similarity)


def _normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


# Adapter -----------------------------------------------------------------


class BiometricAnalyzer:
    """
    Stable contract over a ``FaceBackend``.
    """

    def __init__(
        self,
        backend: FaceBackend,
        thresholds: BiometricThresholds | None = None,
    ) -> None:
        self.backend = backend
        self.thresholds = thresholds or BiometricThresholds()

    @property
    def ready(self) -> bool:
        return bool(self.backend.ready)

    def _qualifying_faces(self, image: np.ndarray) -> List[RawFace]:
        if not self.backend.ready:
            raise AnalysisUnavailable("Face models are not loaded yet")
        faces = [
            face
            for face in self.backend.detect(image)
            if face.score >= self.thresholds.detection_score
        ]
        faces.sort(key=lambda face: face.score, reverse=True)
        return faces

    def analyze(self, frame: ImageLike) -> FrameAnalysis:
        """
        Count qualifying faces and derive EAR and gaze for the primary one.

        Raises:
            AnalysisUnavailable: The backend is not initialised.
            ValueError: The frame cannot be decoded.
        """
        image = load_image(frame)
        height, width = image.shape[:2]
        faces = self._qualifying_faces(image)

        observations = [
            FaceObservation(
                box=serialize_bbox(face.box),
                score=to_float(face.score),
                landmarks=(
                    np.asarray(face.landmarks, dtype=float).tolist()
                    if face.landmarks is not None
                    else None
                ),
            )
            for face in faces
        ]

        ear = None
        gaze = None
        descriptor = None
        if faces:
            primary = faces[0]
            descriptor = primary.descriptor
            if primary.landmarks is not None:
                try:
                    ear = average_ear(primary.landmarks)
                    gaze = gaze_offset(primary.landmarks, width, height)
                except (ValueError, IndexError) as exc:
                    LOGGER.debug("Eye metrics skipped: %s", exc)

        return FrameAnalysis(
            face_count=len(faces),
            faces=observations,
            ear_value=ear,
            gaze_offset=gaze,
            frame_size=(width, height),
            descriptor=descriptor,
        )

    def describe(self, frame: ImageLike) -> Optional[np.ndarray]:
        """
        Descriptor of the highest scoring qualifying face, if any.
        """
        faces = self._qualifying_faces(load_image(frame))
        for face in faces:
            if face.descriptor is not None:
                return np.asarray(face.descriptor, dtype=np.float32)
        return None

    def describe_reference(self, frame: ImageLike) -> np.ndarray:
        """
        Validate a registration frame and return its descriptor.

        Raises:
            NoFaceInReference: No qualifying face with a descriptor.
            ValueError: More than one face is visible.
        """
        analysis = self.analyze(frame)
        if analysis.face_count == 0 or analysis.descriptor is None:
            raise NoFaceInReference("No face detected in the reference image")
        if analysis.face_count > 1:
            raise ValueError(
                f"Multiple faces detected in the reference image ({analysis.face_count})"
            )
        return np.asarray(analysis.descriptor, dtype=np.float32)

    def compare(
        self,
        reference_frame: ImageLike,
        candidate_frame: ImageLike,
        threshold: Optional[float] = None,
    ) -> FaceComparison:
        """
        Compare the identity in two frames.

        Raises:
            NoFaceInReference / NoFaceInCandidate: A frame has no usable face.
                Never reported as a low-similarity mismatch.
        """
        threshold = self.thresholds.match if threshold is None else threshold
        reference = self.describe(reference_frame)
        if reference is None:
            raise NoFaceInReference("Reference frame contains no usable face")
        candidate = self.describe(candidate_frame)
        return compare_descriptors(reference, candidate, threshold)

    def verify(
        self,
        frame: ImageLike,
        reference_descriptor: Optional[np.ndarray] = None,
    ) -> VerificationOutcome:
        """
        Authoritative check of one sampled frame.

        Produces the events to record: face presence problems, identity
        mismatch, suspicious eye movement, or a single clean verification.
        """
        analysis = self.analyze(frame)
        events: List[Tuple[EventType, Dict[str, Any]]] = []

        if analysis.face_count == 0:
            events.append((EventType.FACE_NOT_DETECTED, {"faceCount": 0}))
            return VerificationOutcome(analysis, events)

        if analysis.face_count > 1:
            events.append(
                (
                    EventType.MULTIPLE_FACES,
                    {
                        "faceCount": analysis.face_count,
                        "scores": [face.score for face in analysis.faces],
                    },
                )
            )
            return VerificationOutcome(analysis, events)

        comparison = None
        if reference_descriptor is not None:
            try:
                comparison = compare_descriptors(
                    reference_descriptor, analysis.descriptor, self.thresholds.match
                )
            except NoFaceInCandidate:
                events.append(
                    (
                        EventType.FACE_NOT_DETECTED,
                        {"faceCount": analysis.face_count, "reason": "no_descriptor"},
                    )
                )
                return VerificationOutcome(analysis, events)
            if not comparison.matched:
                events.append(
                    (
                        EventType.FACE_MISMATCH,
                        {
                            "similarity": comparison.similarity,
                            "threshold": self.thresholds.match,
                        },
                    )
                )

        verdict = classify_eye_movement(
            analysis.ear_value, analysis.gaze_offset, self.thresholds
        )
        if verdict.suspicious:
            events.append(
                (
                    EventType.SUSPICIOUS_EYE_MOVEMENT,
                    {
                        "reason": verdict.reason,
                        "earValue": analysis.ear_value,
                        "gazeOffset": analysis.gaze_offset,
                    },
                )
            )

        if not events:
            events.append(
                (
                    EventType.VERIFICATION_CLEAN,
                    {
                        "similarity": comparison.similarity if comparison else None,
                        "earValue": analysis.ear_value,
                        "gazeOffset": analysis.gaze_offset,
                    },
                )
            )
        return VerificationOutcome(analysis, events, comparison)


def load_default_analyzer(options=None) -> BiometricAnalyzer:
    """
    Convenience helper to build an analyzer on the InsightFace backend.
    """
    from .face_backend import InsightFaceBackend

    thresholds = (
        BiometricThresholds.from_options(options) if options is not None else None
    )
    model_name = getattr(options, "insightface_model", None)
    backend = InsightFaceBackend(model_name=model_name) if model_name else InsightFaceBackend()
    return BiometricAnalyzer(backend, thresholds)
