from conftest import make_registration, make_verification
from models.payloads import NO_MATCH, RegistrationPayload, VerificationPayload


def test_registration_serializes_image_and_timestamp():
    payload = make_registration(fingerprint_image=b"\x00\x01raw")
    data = payload.to_dict()

    assert data["fingerprint_image"] == "AAFyYXc="
    assert data["captured_at"] == "2024-05-01T09:30:00Z"
    assert RegistrationPayload.from_dict(data) == payload


def test_registration_problems_listed():
    payload = make_registration(student_id=0, roll_number="", fingerprint_template=" ", quality_score=-1)
    problems = payload.problems()
    assert len(problems) == 4


def test_verification_validation():
    assert make_verification().problems() == []
    assert make_verification(match_result=NO_MATCH, entry_allowed=False).problems() == []
    assert make_verification(confidence_score=150).problems()
    assert make_verification(student_id=None).problems() == []
    assert make_verification(fingerprint_template="").problems()


def test_verification_from_dict_defaults():
    restored = VerificationPayload.from_dict({"roll_number": "R-9", "confidence_score": "77.5"})
    assert restored.match_result == NO_MATCH
    assert restored.confidence_score == 77.5
    assert restored.entry_allowed is False
