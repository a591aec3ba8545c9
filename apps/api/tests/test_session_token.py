import pytest
from jose import jwt

from config import settings
from services.session_token import SESSION_TOKEN_TYPE, create_session_token, decode_session_token


def test_session_token_round_trip_carries_uid_and_email():
    issued = create_session_token("uid-42", email="who@example.com", expires_hours=2)

    claims = decode_session_token(issued["token"])

    assert claims["sub"] == "uid-42"
    assert claims["email"] == "who@example.com"
    assert claims["type"] == SESSION_TOKEN_TYPE
    assert claims["exp"] == issued["expires_at"]


@pytest.mark.parametrize(
    "claims",
    [
        {"sub": "uid-42", "type": "refresh"},
        {"sub": "", "type": SESSION_TOKEN_TYPE},
    ],
)
def test_decode_rejects_wrong_type_or_missing_subject(claims):
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    with pytest.raises(ValueError):
        decode_session_token(token)


def test_decode_rejects_foreign_signature():
    token = jwt.encode({"sub": "uid-42", "type": SESSION_TOKEN_TYPE}, "some-other-secret", algorithm="HS256")

    with pytest.raises(ValueError):
        decode_session_token(token)
