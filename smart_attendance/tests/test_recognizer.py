import pytest

import database.db as db
import smart_attendance.config as config
from smart_attendance.collaborators import DetectedFace
from smart_attendance.models import EligibleStudent
from smart_attendance.recognizer import (
    DescriptorFaceVerifier,
    DescriptorPhotoMatcher,
    best_similarity,
    cosine_similarity,
)


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "recognizer_test.db"
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    db.create_tables()
    return test_db


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1, 0], [1, 0, 0])


def test_best_similarity_floors_at_zero():
    assert best_similarity([1, 0], []) == 0.0
    assert best_similarity([1, 0], [[-1, 0]]) == 0.0
    assert best_similarity([1, 0], [[0, 1], [1, 0.1]]) == pytest.approx(0.995, abs=1e-3)


def test_verifier_without_registered_faces_scores_zero(temp_db):
    student_id = db.add_student("Asha Rao", "R001")
    assert DescriptorFaceVerifier().verify(student_id, [1.0, 0.0]) == 0.0


def test_verifier_ignores_deleted_faces(temp_db):
    student_id = db.add_student("Asha Rao", "R001")
    face_id = db.add_student_face(student_id, [1.0, 0.0])
    db.add_student_face(student_id, [0.0, 1.0])

    verifier = DescriptorFaceVerifier()
    assert verifier.verify(student_id, [1.0, 0.0]) == pytest.approx(1.0)

    db.deactivate_student_face(face_id)
    assert verifier.verify(student_id, [1.0, 0.0]) == pytest.approx(0.0)


def test_photo_matcher_only_considers_roster(temp_db):
    asha = db.add_student("Asha Rao", "R001")
    outsider = db.add_student("Other", "R999")
    db.add_student_face(asha, [1.0, 0.0, 0.0])
    db.add_student_face(outsider, [0.0, 1.0, 0.0])

    result = DescriptorPhotoMatcher(threshold=0.6).match(
        [DetectedFace([0.97, 0.1, 0.0]), DetectedFace([0.0, 1.0, 0.0])],
        [EligibleStudent(asha, "Asha Rao", "R001")],
    )
    assert result.matched_student_ids == frozenset({asha})
    assert result.detected_faces_count == 2
    assert result.matches[1] == (None, 0.0)
