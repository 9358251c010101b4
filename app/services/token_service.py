"""JWT access token validation (ES256).

Tokens are issued by the platform's auth service; this service only
verifies them.  The verifying key comes from JWT_PUBLIC_KEY (PEM).

Dev/test: when JWT_PUBLIC_KEY is unset an ephemeral EC key pair is
generated on import, and ``create_access_token`` signs with it so tests
and local scripts can mint tokens.  In production there is no private
key here at all.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import jwt
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from app.core.config import SETTINGS

ALGORITHM = "ES256"
ISSUER = "auth-service"
AUDIENCE = "auth-service"
ACCESS_TOKEN_TTL_MIN = 15

if SETTINGS.jwt_public_key:
    _private_key: ec.EllipticCurvePrivateKey | None = None
    _public_key = load_pem_public_key(SETTINGS.jwt_public_key.encode())
else:
    _private_key = ec.generate_private_key(ec.SECP256R1())
    _public_key = _private_key.public_key()


def create_access_token(
    *,
    sub: str,
    roles: list[str] | None = None,
    ttl: timedelta = timedelta(minutes=ACCESS_TOKEN_TTL_MIN),
) -> str:
    """Sign a token with the ephemeral dev/test key.

    Raises RuntimeError when a real public key is configured, because the
    matching private key lives with the auth service.
    """
    if _private_key is None:
        raise RuntimeError("token minting is only available without JWT_PUBLIC_KEY")
    now = datetime.now(UTC)
    payload = {
        "sub": sub,
        "iss": ISSUER,
        "aud": AUDIENCE,
        "exp": now + ttl,
        "iat": now,
        "jti": str(uuid.uuid4()),
        "roles": roles or ["user"],
    }
    return jwt.encode(payload, _private_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature and claims, return the payload.

    Pins algorithm to ES256 to prevent alg:none and alg-switching attacks.
    Validates exp, iss, and aud automatically via PyJWT options.

    Raises jwt.ExpiredSignatureError, jwt.InvalidTokenError on failure.
    """
    return jwt.decode(
        token,
        _public_key,
        algorithms=[ALGORITHM],
        issuer=ISSUER,
        audience=AUDIENCE,
        options={"require": ["sub", "exp", "iat", "jti"]},
    )
