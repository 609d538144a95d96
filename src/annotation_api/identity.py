"""
User accounts: registration, login, lookup and role changes, backed by a local
SQLite table.

Self-registration always creates a plain `user`. The `content` role is granted
either by listing the email in `auth.content_emails` before the account is
created, or afterwards through `IdentityService.set_role`.

Passwords are stored as PBKDF2-HMAC-SHA256 hashes in the form
"pbkdf2_sha256$<iterations>$<salt hex>$<hash hex>".
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional
from uuid import uuid4

from .database import open_connection
from .errors import AlreadyExists, InvalidCredentials, NotFound
from .models import AuthResponse, LoginRequest, RegisterRequest, UserResponse, UserRole
from .tokens import TokenService
from .utils import ensure_directory, utcnow

logger = logging.getLogger(__name__)

HASH_SCHEME = "pbkdf2_sha256"
DEFAULT_ITERATIONS = 600_000
SALT_BYTES = 16

INVALID_CREDENTIALS_MESSAGE = "invalid email or password"


def hash_password(password: str, iterations: int = DEFAULT_ITERATIONS) -> str:
    salt = secrets.token_bytes(SALT_BYTES)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, iterations)
    return f"{HASH_SCHEME}${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    """Check a password against an encoded hash; malformed hashes never match."""
    try:
        scheme, iterations, salt_hex, digest_hex = encoded.split("$")
        if scheme != HASH_SCHEME:
            return False
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
        rounds = int(iterations)
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, rounds)
    return hmac.compare_digest(digest, expected)


@dataclass
class UserRecord:
    id: str
    email: str
    password_hash: str
    name: str
    role: UserRole
    created_at: datetime
    updated_at: datetime

    def to_response(self) -> UserResponse:
        return UserResponse(
            id=self.id,
            email=self.email,
            name=self.name,
            role=self.role,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class UserDatabase:
    """
    Stores user accounts in the same SQLite file as the annotations.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema if it doesn't exist."""
        with open_connection(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    name TEXT NOT NULL,
                    role TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    def insert_user(self, user: UserRecord) -> None:
        """
        Raises:
            AlreadyExists: If the email is already registered
        """
        try:
            with open_connection(self.db_path) as conn:
                conn.execute("""
                    INSERT INTO users (id, email, password_hash, name, role, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    user.id,
                    user.email,
                    user.password_hash,
                    user.name,
                    user.role.value,
                    user.created_at.isoformat(),
                    user.updated_at.isoformat(),
                ))
        except sqlite3.IntegrityError as exc:
            raise AlreadyExists("user with this email already exists") from exc

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        with open_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
            return self._row_to_user(row) if row else None

    def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        with open_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return self._row_to_user(row) if row else None

    def update_role(self, user_id: str, role: UserRole, updated_at: datetime) -> bool:
        """Returns False when no user has the given id."""
        with open_connection(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE users SET role = ?, updated_at = ? WHERE id = ?",
                (role.value, updated_at.isoformat(), user_id),
            )
            return cursor.rowcount > 0

    def _row_to_user(self, row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            name=row["name"],
            role=UserRole(row["role"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class IdentityService:
    """
    Registration, login, user lookup and role changes.

    Login gives the same error for an unknown email and a wrong password, and
    runs a hash verification in both cases.
    """

    def __init__(
        self,
        users: UserDatabase,
        tokens: TokenService,
        iterations: int = DEFAULT_ITERATIONS,
        content_emails: Iterable[str] = (),
    ):
        self.users = users
        self.tokens = tokens
        self.iterations = iterations
        self.content_emails = frozenset(email.strip().lower() for email in content_emails)
        self._dummy_hash = hash_password(secrets.token_hex(16), iterations)

    def _issue(self, user: UserRecord) -> AuthResponse:
        return AuthResponse(user=user.to_response(), token=self.tokens.create_token(user.id, user.email))

    def register(self, request: RegisterRequest) -> AuthResponse:
        email = str(request.email).strip().lower()
        if self.users.get_by_email(email) is not None:
            raise AlreadyExists("user with this email already exists")

        now = utcnow()
        user = UserRecord(
            id=uuid4().hex,
            email=email,
            password_hash=hash_password(request.password, self.iterations),
            name=request.name.strip(),
            role=UserRole.CONTENT if email in self.content_emails else UserRole.USER,
            created_at=now,
            updated_at=now,
        )
        self.users.insert_user(user)
        logger.info(f"Registered user {user.id} with role {user.role.value}")
        return self._issue(user)

    def login(self, request: LoginRequest) -> AuthResponse:
        email = str(request.email).strip().lower()
        user = self.users.get_by_email(email)
        if user is None:
            verify_password(request.password, self._dummy_hash)
            raise InvalidCredentials(INVALID_CREDENTIALS_MESSAGE)
        if not verify_password(request.password, user.password_hash):
            raise InvalidCredentials(INVALID_CREDENTIALS_MESSAGE)
        logger.info(f"User {user.id} logged in")
        return self._issue(user)

    def get_user(self, user_id: str) -> UserRecord:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound("user not found")
        return user

    def set_role(self, user_id: str, role: UserRole) -> UserRecord:
        """
        Change a user's role. Existing tokens pick up the new role on their
        next request, since roles are read from the store rather than the token.

        Raises:
            NotFound: If no user has the given id
        """
        if not self.users.update_role(user_id, role, utcnow()):
            raise NotFound("user not found")
        logger.info(f"Set role of user {user_id} to {role.value}")
        return self.get_user(user_id)
