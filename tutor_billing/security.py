"""JWT helpers for the account-facing billing routes.

WHAT:
    Decodes the bearer tokens issued by the marketplace's auth service.
WHY:
    Authentication is owned elsewhere; billing only needs to know which
    account email and class (tutor/student) is calling.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import jwt

from .utils.env import env_value


ALGORITHM = "HS256"
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))


def _jwt_secret() -> str:
    return env_value("JWT_SECRET", required=True)


def create_access_token(subject: str, role: str, expires_minutes: int = JWT_EXPIRES_MINUTES) -> str:
    """Issue a token for `subject` (account email). Used by tooling and tests."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": subject, "role": role, "exp": expire}
    return jwt.encode(payload, _jwt_secret(), algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT. Raises `jose.JWTError` on failure."""
    return jwt.decode(token, _jwt_secret(), algorithms=[ALGORITHM])
