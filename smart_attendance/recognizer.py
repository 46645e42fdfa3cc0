import json
import logging
from typing import Sequence

import numpy as np # type: ignore

from database.db import get_faces_for_students, get_student_faces
from smart_attendance.collaborators import DetectedFace, PhotoMatchResult
from smart_attendance.config import FACE_MATCH_THRESHOLD
from smart_attendance.models import EligibleStudent

logger = logging.getLogger(__name__)


def _as_vector(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=np.float64).ravel()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = _as_vector(a)
    vb = _as_vector(b)
    if va.shape != vb.shape:
        raise ValueError("Descriptors must have the same length")
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def best_similarity(sample: Sequence[float], references: Sequence[Sequence[float]]) -> float:
    """Highest cosine similarity of ``sample`` against stacked references, floored at 0."""
    if len(references) == 0:
        return 0.0
    matrix = np.vstack([_as_vector(r) for r in references])
    vector = _as_vector(sample)
    if matrix.shape[1] != vector.shape[0]:
        raise ValueError("Descriptors must have the same length")
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, matrix @ vector / norms, 0.0)
    return max(0.0, float(scores.max()))


class DescriptorFaceVerifier:
    """Scores a scan-time face descriptor against the student's registered faces."""

    def verify(self, student_id: int, face_sample: Sequence[float]) -> float:
        references = [json.loads(row[2]) for row in get_student_faces(student_id)]
        if not references:
            logger.info("[Verifier] student %s has no registered faces", student_id)
            return 0.0
        return best_similarity(face_sample, references)


class DescriptorPhotoMatcher:
    def __init__(self, threshold: float = FACE_MATCH_THRESHOLD) -> None:
        self.threshold = threshold

    def match(self, faces: Sequence[DetectedFace], roster: Sequence[EligibleStudent]) -> PhotoMatchResult:
        references: dict[int, list[list[float]]] = {}
        for student_id, descriptor in get_faces_for_students([s.student_id for s in roster]):
            references.setdefault(int(student_id), []).append(json.loads(descriptor))

        matched: set[int] = set()
        matches = []
        for face in faces:
            best_id = None
            best_score = 0.0
            for student_id, refs in references.items():
                score = best_similarity(face.descriptor, refs)
                if score >= self.threshold and score > best_score:
                    best_id, best_score = student_id, score
            matches.append((best_id, best_score))
            if best_id is not None:
                matched.add(best_id)

        return PhotoMatchResult(
            matched_student_ids=frozenset(matched),
            detected_faces_count=len(faces),
            matches=tuple(matches),
        )
