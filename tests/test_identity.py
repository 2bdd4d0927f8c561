"""Tests for JWT identity resolution on the live transport."""

import uuid

import pytest
from jose import jwt

from src.config import settings
from src.exceptions import UnauthorizedException
from src.modules.identity.auth import (
    ChatIdentity,
    JWTIdentityProvider,
    create_access_token,
    user_from_token,
)

USER_ID = uuid.uuid4()
ADMIN_ID = uuid.uuid4()


class TestJWTIdentityProvider:
    def setup_method(self):
        self.provider = JWTIdentityProvider()

    def test_no_token_no_claims_is_anonymous(self):
        identity = self.provider.authenticate(None)
        assert identity == ChatIdentity.anonymous()
        assert identity.is_anonymous

    def test_claims_without_token_are_rejected(self):
        with pytest.raises(UnauthorizedException):
            self.provider.authenticate(None, claimed_user_id=USER_ID)
        with pytest.raises(UnauthorizedException):
            self.provider.authenticate(None, claims_admin=True)

    def test_valid_admin_token(self):
        token = create_access_token(ADMIN_ID, "alice@support.test", "admin", name="Alice")
        identity = self.provider.authenticate(token, claimed_user_id=ADMIN_ID, claims_admin=True)

        assert identity.user_id == ADMIN_ID
        assert identity.is_admin
        assert identity.name == "Alice"

    def test_subject_mismatch_is_rejected(self):
        token = create_access_token(USER_ID, "carol@example.com", "user")
        with pytest.raises(UnauthorizedException, match="subject"):
            self.provider.authenticate(token, claimed_user_id=uuid.uuid4())

    def test_admin_claim_requires_admin_role(self):
        token = create_access_token(USER_ID, "carol@example.com", "user")
        with pytest.raises(UnauthorizedException, match="admin"):
            self.provider.authenticate(token, claims_admin=True)

    def test_user_token_without_claims(self):
        token = create_access_token(USER_ID, "carol@example.com", "user")
        identity = self.provider.authenticate(token)
        assert identity.user_id == USER_ID
        assert not identity.is_admin


class TestUserFromToken:
    def test_wrong_secret_is_rejected(self):
        token = jwt.encode(
            {"sub": str(USER_ID), "email": "carol@example.com"},
            "some-other-secret",
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(UnauthorizedException, match="Invalid or expired"):
            user_from_token(token)

    def test_missing_claims_are_rejected(self):
        token = jwt.encode(
            {"sub": "not-a-uuid"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm
        )
        with pytest.raises(UnauthorizedException, match="claims"):
            user_from_token(token)
