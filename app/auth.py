"""JWT encode/decode for bearer tokens issued to editor clients."""

from datetime import datetime, timedelta, timezone

import jwt

from app.config import settings

ALGORITHM = "HS256"
TOKEN_EXPIRY_HOURS = 12
_JWT_AUD = "code-migrator"
_JWT_ISS = "code-migrator-api"


def create_token(user_id: str, github_login: str) -> str:
    """Create a token for the given user."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "github_login": github_login,
        "aud": _JWT_AUD,
        "iss": _JWT_ISS,
        "exp": now + timedelta(hours=TOKEN_EXPIRY_HOURS),
        "iat": now,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[ALGORITHM],
        audience=_JWT_AUD,
        issuer=_JWT_ISS,
        options={"require": ["exp", "iat", "sub", "aud", "iss"]},
    )


def user_id_from_token(token: str) -> str | None:
    """Return the ``sub`` of a valid token, or None if it is invalid."""
    try:
        payload = decode_token(token)
    except jwt.PyJWTError:
        return None
    return payload.get("sub") or None
