"""Session tokens: HS256 JWTs carrying the user id and email."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .errors import Unauthenticated
from .models import TokenClaims
from .utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "HS256"
DEFAULT_ISSUER = "annotation-api"
DEFAULT_TTL_HOURS = 24

REQUIRED_CLAIMS = ["user_id", "email", "iat", "exp", "iss"]


class TokenService:
    def __init__(
        self,
        secret: str,
        ttl_hours: int = DEFAULT_TTL_HOURS,
        issuer: str = DEFAULT_ISSUER,
        algorithm: str = DEFAULT_ALGORITHM,
    ) -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret
        self.ttl = timedelta(hours=ttl_hours)
        self.issuer = issuer
        self.algorithm = algorithm

    def create_token(self, user_id: str, email: str, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        payload = {
            "user_id": user_id,
            "email": email,
            "iat": now,
            "nbf": now,
            "exp": now + self.ttl,
            "iss": self.issuer,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def decode_token(self, token: str) -> TokenClaims:
        """
        Validate a token and return its claims.

        Raises:
            Unauthenticated: On a bad signature, expiry, unexpected algorithm,
                wrong issuer or missing claims
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthenticated("token has expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.debug(f"Rejected token: {exc}")
            raise Unauthenticated("invalid token") from exc

        user_id = payload.get("user_id")
        email = payload.get("email")
        if not isinstance(user_id, str) or not user_id or not isinstance(email, str):
            raise Unauthenticated("invalid token")

        return TokenClaims(
            user_id=user_id,
            email=email,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
