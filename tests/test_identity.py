"""
Tests for user accounts and session tokens.
"""

from datetime import timedelta

import jwt
import pytest

from annotation_api.errors import AlreadyExists, InvalidCredentials, NotFound, Unauthenticated
from annotation_api.identity import (
    IdentityService,
    UserDatabase,
    hash_password,
    verify_password,
)
from annotation_api.models import LoginRequest, RegisterRequest, UserRole
from annotation_api.tokens import TokenService
from annotation_api.utils import utcnow

SECRET = "unit-test-secret"


@pytest.fixture
def tokens():
    return TokenService(secret=SECRET)


@pytest.fixture
def identity(tmp_path, tokens):
    return IdentityService(UserDatabase(tmp_path / "users.db"), tokens, iterations=1000)


class TestPasswordHashing:
    def test_round_trip(self):
        encoded = hash_password("secret123", iterations=1000)
        assert encoded.startswith("pbkdf2_sha256$1000$")
        assert verify_password("secret123", encoded)
        assert not verify_password("secret124", encoded)

    def test_salted(self):
        assert hash_password("secret123", iterations=1000) != hash_password("secret123", iterations=1000)

    @pytest.mark.parametrize("encoded", ["", "plain", "md5$1$00$00", "pbkdf2_sha256$x$zz$zz"])
    def test_malformed_hash_never_matches(self, encoded):
        assert not verify_password("secret123", encoded)


class TestIdentityService:
    def test_register_and_login(self, identity, tokens):
        registered = identity.register(
            RegisterRequest(email="Grace@StudyNotes.io", password="secret123", name="Grace")
        )
        assert registered.user.email == "grace@studynotes.io"
        assert registered.user.role == UserRole.USER
        assert tokens.decode_token(registered.token).user_id == registered.user.id

        logged_in = identity.login(LoginRequest(email="grace@studynotes.io", password="secret123"))
        assert logged_in.user.id == registered.user.id

        stored = identity.get_user(registered.user.id)
        assert stored.password_hash != "secret123"

    def test_duplicate_email(self, identity):
        identity.register(RegisterRequest(email="dup@studynotes.io", password="secret123", name="A"))
        with pytest.raises(AlreadyExists):
            identity.register(RegisterRequest(email="DUP@studynotes.io", password="secret123", name="B"))

    def test_login_errors_match(self, identity):
        identity.register(RegisterRequest(email="alan@studynotes.io", password="secret123", name="Alan"))

        with pytest.raises(InvalidCredentials) as wrong_password:
            identity.login(LoginRequest(email="alan@studynotes.io", password="nope"))
        with pytest.raises(InvalidCredentials) as unknown_email:
            identity.login(LoginRequest(email="nobody@studynotes.io", password="nope"))

        assert str(wrong_password.value) == str(unknown_email.value) == "invalid email or password"

    def test_get_missing_user(self, identity):
        with pytest.raises(NotFound):
            identity.get_user("missing")

    def test_requested_role_is_ignored(self, identity):
        """A role in the registration payload never reaches the stored user."""
        request = RegisterRequest.model_validate(
            {"email": "eve@studynotes.io", "password": "secret123", "name": "Eve", "role": "content"}
        )
        registered = identity.register(request)
        assert registered.user.role == UserRole.USER
        assert identity.get_user(registered.user.id).role == UserRole.USER

    def test_configured_content_emails(self, tmp_path, tokens):
        """Emails listed in the content seed register as content users."""
        identity = IdentityService(
            UserDatabase(tmp_path / "users.db"),
            tokens,
            iterations=1000,
            content_emails=[" Editor@StudyNotes.io "],
        )
        editor = identity.register(RegisterRequest(email="editor@studynotes.io", password="secret123", name="Ed"))
        reader = identity.register(RegisterRequest(email="reader@studynotes.io", password="secret123", name="Rd"))

        assert editor.user.role == UserRole.CONTENT
        assert reader.user.role == UserRole.USER

    def test_set_role(self, identity):
        registered = identity.register(RegisterRequest(email="ada@studynotes.io", password="secret123", name="Ada"))

        promoted = identity.set_role(registered.user.id, UserRole.CONTENT)
        assert promoted.role == UserRole.CONTENT
        assert promoted.updated_at >= registered.user.updated_at
        assert identity.get_user(registered.user.id).role == UserRole.CONTENT

        identity.set_role(registered.user.id, UserRole.USER)
        assert identity.get_user(registered.user.id).role == UserRole.USER

    def test_set_role_missing_user(self, identity):
        with pytest.raises(NotFound):
            identity.set_role("missing", UserRole.CONTENT)


class TestTokens:
    def test_claims(self, tokens):
        token = tokens.create_token("user-1", "a@studynotes.io")
        payload = jwt.decode(token, SECRET, algorithms=["HS256"], issuer="annotation-api")
        assert payload["user_id"] == "user-1"
        assert payload["email"] == "a@studynotes.io"
        assert payload["exp"] - payload["iat"] == 24 * 3600

        claims = tokens.decode_token(token)
        assert claims.user_id == "user-1"
        assert claims.expires_at - claims.issued_at == timedelta(hours=24)

    def test_expired(self, tokens):
        token = tokens.create_token("user-1", "a@studynotes.io", now=utcnow() - timedelta(hours=25))
        with pytest.raises(Unauthenticated):
            tokens.decode_token(token)

    def test_wrong_secret(self, tokens):
        token = TokenService(secret="other-secret").create_token("user-1", "a@studynotes.io")
        with pytest.raises(Unauthenticated):
            tokens.decode_token(token)

    def test_wrong_issuer(self, tokens):
        token = TokenService(secret=SECRET, issuer="someone-else").create_token("user-1", "a@studynotes.io")
        with pytest.raises(Unauthenticated):
            tokens.decode_token(token)

    def test_unsigned_token_rejected(self, tokens):
        token = jwt.encode(
            {"user_id": "user-1", "email": "a@studynotes.io", "iss": "annotation-api"},
            key=None,
            algorithm="none",
        )
        with pytest.raises(Unauthenticated):
            tokens.decode_token(token)

    def test_missing_claims(self, tokens):
        now = utcnow()
        token = jwt.encode(
            {"email": "a@studynotes.io", "iat": now, "exp": now + timedelta(hours=1), "iss": "annotation-api"},
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(Unauthenticated):
            tokens.decode_token(token)

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenService(secret="")
