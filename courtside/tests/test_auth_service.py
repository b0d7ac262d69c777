"""
Unit tests for authentication service.
Tests JWT token creation and verification.
"""
from datetime import timedelta

import jwt

from courtside.services import auth_service


class TestJWTTokens:
    """Tests for JWT token creation and verification."""

    def test_create_and_verify_token(self):
        """Test a freshly minted token verifies with its claims."""
        token = auth_service.create_access_token({"user_id": "u1", "username": "kerri"})

        payload = auth_service.verify_token(token)

        assert payload["user_id"] == "u1"
        assert payload["username"] == "kerri"
        assert "exp" in payload

    def test_expired_token(self):
        """Test an expired token is rejected."""
        token = auth_service.create_access_token({"user_id": "u1"}, expires_delta=timedelta(seconds=-1))

        assert auth_service.verify_token(token) is None

    def test_wrong_secret(self):
        """Test a token signed with another key is rejected."""
        token = jwt.encode({"user_id": "u1"}, "some-other-secret", algorithm=auth_service.JWT_ALGORITHM)

        assert auth_service.verify_token(token) is None

    def test_garbage_token(self):
        assert auth_service.verify_token("not-a-token") is None


class TestUserIdClaim:
    def test_numeric_user_id_becomes_string(self):
        assert auth_service.get_user_id({"user_id": 42}) == "42"

    def test_missing_claim(self):
        assert auth_service.get_user_id({"phone_number": "+15551234567"}) is None
        assert auth_service.get_user_id(None) is None
